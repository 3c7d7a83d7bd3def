"""Task bodies invoked by the scheduler."""

from facet_core.tasks.bodies import (
    KeywordTaskBody,
    TaskBody,
    TextGenerationTaskBody,
    build_prompt,
    parse_output,
    validate_output,
)

__all__ = [
    "KeywordTaskBody",
    "TaskBody",
    "TextGenerationTaskBody",
    "build_prompt",
    "parse_output",
    "validate_output",
]
