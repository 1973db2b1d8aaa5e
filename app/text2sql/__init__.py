"""
Trustay AI Text2SQL
Conversational question answering over the rental marketplace database
"""
from .pipeline import Text2SqlPipeline
from .router import configure_dependencies, router

__all__ = ["Text2SqlPipeline", "configure_dependencies", "router"]
