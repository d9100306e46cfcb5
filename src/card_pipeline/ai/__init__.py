"""AI parsing clients."""

from .base import AIParser
from .openai_parser import OpenAICardParser

__all__ = ["AIParser", "OpenAICardParser"]
