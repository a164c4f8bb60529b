"""
Tagging utilities for consistent resource tagging across stacks.
"""

from typing import Dict, Optional


def base_tags(stack_name: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base tags for a stack.

    No timestamp is included: tags are part of the desired attributes and
    must stay stable between plans.

    Args:
        stack_name: Stack name
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags = {
        "project": "webtier",
        "stack": stack_name,
    }

    if extra:
        tags.update(extra)

    return tags


def parse_user_tags(tag_strings: list[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Args:
        tag_strings: List of tag strings in "key=value" format

    Returns:
        Dictionary of parsed tags

    Raises:
        ValueError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags

