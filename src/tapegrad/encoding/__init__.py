"""
Encoders for expression graphs (install the `dot` extra for Graphviz output)
"""
