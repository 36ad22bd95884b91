"""
YAML frontmatter for markdown artefacts.

    ---
    id: T039
    status: In Progress
    parent: PRD-001 / E003
    ---
    # body...
"""

import re
from pathlib import Path
from typing import Any, Union

import yaml


# Fences are whole lines; a "---" inside a value does not close the block
FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*\r?$\n?(.*)\Z", re.MULTILINE | re.DOTALL)


def parse(content: str) -> dict[str, Any]:
    """Split markdown into frontmatter data and body.

    Returns {"data": {}, "body": content} when there is no valid
    frontmatter block at the very start of the text.
    """
    match = FRONTMATTER_RE.match(content)
    if not match:
        return {"data": {}, "body": content}

    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {"data": {}, "body": content}
    if not isinstance(data, dict):
        return {"data": {}, "body": content}
    return {"data": data, "body": match.group(2).lstrip("\n")}


def stringify(data: dict[str, Any], body: str) -> str:
    header = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    body = body.lstrip("\n")
    return f"---\n{header}---\n\n{body}"


def load(path: Union[str, Path]) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return parse(f.read())
