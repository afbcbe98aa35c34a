"""
Utilities for handling tags and the priority tag token in device notes.
"""

from typing import Iterable, List, Optional

PRIORITY_TAGS = ("#P1", "#P2", "#P3", "#P4", "#P5")


def normalize_tag(tag: Optional[str]) -> str:
    """Strip whitespace and a leading ``#`` from a tag."""
    if not tag:
        return ""
    return str(tag).strip().lstrip("#").strip()


def parse_tag_line(value: Optional[str]) -> List[str]:
    """Split a comma separated ``#tags:`` value into clean tags."""
    if not value:
        return []
    return merge_tags([part for part in value.split(",")], [])


def format_tag_line(tags: Iterable[str]) -> str:
    """Render tags for the ``#tags:`` metadata line."""
    return ", ".join(merge_tags(list(tags), []))


def merge_tags(ledger_tags: List[str], device_tags: List[str]) -> List[str]:
    """
    Merge tags from both sides, removing duplicates while preserving order.

    Comparison is case-insensitive; the first spelling seen is kept.

    Args:
        ledger_tags: Tags from the ledger task
        device_tags: Tags decoded from the device notes

    Returns:
        Merged list of unique tags without ``#`` prefixes
    """
    seen = set()
    result = []

    # Ledger tags first (they take precedence for ordering)
    for tag in list(ledger_tags or []) + list(device_tags or []):
        normalized = normalize_tag(tag)
        if not normalized:
            continue
        key = normalized.lower()
        if key not in seen:
            seen.add(key)
            result.append(normalized)

    return result


def apply_priority_tag(user_lines: List[str], ledger_priority: Optional[int]) -> List[str]:
    """
    Write the ``#P1``..``#P5`` token for a ledger priority into user lines.

    Any existing priority token found by literal substring match is replaced in
    place; when none is present the token is appended as its own line. Returns a
    new list and leaves the input untouched.
    """
    if ledger_priority is None or not 1 <= int(ledger_priority) <= 5:
        return list(user_lines)

    token = PRIORITY_TAGS[int(ledger_priority) - 1]
    lines = list(user_lines)
    replaced = False
    for idx, line in enumerate(lines):
        for existing in PRIORITY_TAGS:
            if existing in line:
                lines[idx] = line.replace(existing, token)
                replaced = True
                break
        if replaced:
            break

    if not replaced:
        lines.append(token)
    return lines


def has_tag_token(user_lines: List[str], tag: str) -> bool:
    """True when any line carries ``#tag`` as a whitespace separated word."""
    token = f"#{normalize_tag(tag)}".lower()
    return any(token in line.lower().split() for line in user_lines)


def add_tag_token(user_lines: List[str], tag: str) -> List[str]:
    """
    Append ``#tag`` as its own line unless a line already carries it.

    Used for tags that must survive in notes written without a metadata
    block. Returns a new list.
    """
    lines = list(user_lines)
    if not has_tag_token(lines, tag):
        lines.append(f"#{normalize_tag(tag)}")
    return lines
