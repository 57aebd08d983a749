import logging
import os

from tapegrad import callbacks, compiler, nodes, runtime

LOG_LEVEL_ENV_SETTER = "TAPEGRAD_LOGLEVEL"


def setup_logger() -> logging.Logger:
    logger = logging.getLogger(__name__)
    logger.setLevel(logging._nameToLevel[os.environ.get(LOG_LEVEL_ENV_SETTER, "INFO")])
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-10s%(funcName)s: - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(console_handler)
    return logger


default_logger = setup_logger()


class TapegradLogger(callbacks.OnNodeCreationCallBack, callbacks.OnInstructionExecCallBack):
    def __init__(self, logger: logging.Logger = default_logger) -> None:
        super().__init__()
        self._logger = logger

    def on_node_creation(self, node: nodes.Node) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.log(
                logging.DEBUG,
                "%(op)-10s(%(in shapes)-20s) → %(out shape)s",
                {
                    "in shapes": ", ".join(str(c.shape.dims) for c in node.graph.children(node)),
                    "op": "input" if node.op is None else str(node.op),
                    "out shape": repr(node.shape),
                },
            )

    def on_instruction_exec(self, instruction: compiler.Instruction, node: nodes.Node, result: runtime.Buffer) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.log(logging.DEBUG, "exec %s -> %r", instruction, node)

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(verbosity={self._logger.level})"
