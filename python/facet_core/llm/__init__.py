"""External text-generation collaborator."""

from facet_core.llm.text_generation import HTTPTextGenerator, ITextGenerator

__all__ = ["HTTPTextGenerator", "ITextGenerator"]
