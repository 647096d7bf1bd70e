"""Prompt validation and prompt construction for generation jobs."""

from typing import Any

MAX_PROMPT_LENGTH = 1000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt supplied with the job

    Returns:
        Validated prompt (unchanged if valid)

    Raises:
        ValueError: If prompt is empty, None, or exceeds 1000 characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def build_quilt_prompt(description: str, options: dict[str, Any]) -> str:
    """Expand a quilt design description with its structured options.

    Args:
        description: Free-text design description
        options: style, colorPalette, complexity (1-5), size, rows, columns, symmetry

    Returns:
        Full text-to-image prompt
    """
    palette = options.get("colorPalette") or []
    if isinstance(palette, str):
        palette = [palette]
    lines = [
        "Create a quilt design with the following specifications:",
        f"Style: {options.get('style', 'traditional')}",
        f"Colors: {', '.join(str(color) for color in palette) or 'any'}",
        f"Complexity level: {options.get('complexity', 3)}/5",
        f"Size: {options.get('size', 'throw')}",
        f"Grid: {options.get('rows', 6)} rows x {options.get('columns', 6)} columns",
        f"Symmetry: {options.get('symmetry', 'none')}",
        "",
        f"Design description: {description}",
        "",
        "Generate a visually appealing quilt pattern with geometric shapes, proper symmetry, "
        "and the specified color palette.",
    ]
    return "\n".join(lines)
