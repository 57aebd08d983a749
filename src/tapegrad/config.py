"""
# Global configuration for the tapegrad package.

User can modify this configuration in 2 ways:

## Permanent change
```python
from tapegrad import config
config.Configuration(engine=engine)
```

## Temporary change
```python
from tapegrad import config
with config.Configuration(engine=engine):
    ...
```
"""

from __future__ import annotations

import collections
import contextlib
import types
from typing import TYPE_CHECKING, Any, ClassVar, Type

from tapegrad import callbacks

if TYPE_CHECKING:
    from tapegrad import compiler, nodes, runtime


class _StackedConfigMeta(type):
    __singletons__: ClassVar[dict[Type, Any]] = {}
    __regular_attrs__: set[str]  # attrs that are not accessed through context stack
    __context_stack__: collections.ChainMap[str, Any]  # stack of contexts that hold all attrs
    __callback_stack__: callbacks.CallbackStack  # stack of callbacks
    __pushed_callbacks__: list[tuple[callbacks.Callback, ...]]  # callbacks inserted per context

    def __call__(cls, *callback: callbacks.Callback, **config_dict: Any) -> type[Configuration]:
        assert not (kwargs := {k: v for k, v in config_dict.items() if v is None}), f"{kwargs=}"
        if cls not in cls.__singletons__:  # initialize:=set class vars for the first time
            cls.__context_stack__ = collections.ChainMap(config_dict)
            cls.__callback_stack__ = callbacks.CallbackStack(callback)
            cls.__pushed_callbacks__ = [callback]
            cls.__regular_attrs__ = set(dir(cls)) - set(dir(_StackedConfigMeta))
            cls.__singletons__[cls] = cls
        else:  # update the stacks with new contexts
            cls.__callback_stack__.insert_callbacks(*callback)
            cls.__pushed_callbacks__.insert(0, callback)
            cls.__context_stack__.maps.insert(0, config_dict)
        return cls.__singletons__[cls]

    def __getattr__(cls: type[_StackedConfigMeta], key: str):
        if key in cls.__regular_attrs__:
            return super().__getattribute__(key)
        try:
            return cls.__context_stack__[key]
        except KeyError:
            raise AttributeError(f"{cls.__name__} has no setting {key!r}") from None

    def __enter__(cls) -> None:
        for enter_callback in cls.__callback_stack__[callbacks.OnCtxEnterCallBack]:
            enter_callback.on_ctx_enter()

    def __exit__(cls, exc_type: type[Exception], exc_value: Exception, traceback: types.TracebackType) -> None:
        for exit_callback in cls.__callback_stack__[callbacks.OnCtxExitCallBack]:
            exit_callback.on_ctx_exit(exc_type, exc_value, traceback)
        cls.__context_stack__.maps.pop(0)
        cls.__callback_stack__.drop_callbacks(*cls.__pushed_callbacks__.pop(0))


class Configuration(contextlib.ContextDecorator, metaclass=_StackedConfigMeta):
    """Configuration for the tapegrad package."""

    engine: runtime.Engine

    def __init__(
        self,
        *callback: callbacks.Callback,
        engine: runtime.Engine | None = None,
        **context: Any,
    ) -> None: ...

    @classmethod
    def on_node_creation(cls, node: nodes.Node) -> None:
        for callback in cls.__callback_stack__[callbacks.OnNodeCreationCallBack]:
            callback.on_node_creation(node)

    @classmethod
    def on_instruction_exec(cls, instruction: compiler.Instruction, node: nodes.Node, result: runtime.Buffer) -> None:
        for callback in cls.__callback_stack__[callbacks.OnInstructionExecCallBack]:
            callback.on_instruction_exec(instruction, node, result)
