"""
Tagging utilities for consistent resource tagging.
"""

from typing import Dict, List, Optional


def base_tags(project: str, name: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base tags for a managed resource.

    Args:
        project: Project name
        name: Resource name (becomes the Name tag, which is also the lookup key for instances)
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags = {
        "Name": name,
        "Project": project,
        "ManagedBy": "rigger",
    }

    if extra:
        tags.update(extra)

    return tags


def to_aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Convert a tag dict into the EC2/IAM [{'Key':..., 'Value':...}] shape."""
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def from_aws_tags(tag_list: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    """Convert [{'Key':..., 'Value':...}] back into a dict."""
    return {tag["Key"]: tag["Value"] for tag in (tag_list or [])}


def parse_user_tags(tag_strings: List[str]) -> Dict[str, str]:
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
