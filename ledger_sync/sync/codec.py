"""
Note codec for the metadata block embedded in device item notes.

A device item's notes look like this once linked::

    Pick up the blue one
    <blank>
    -------
    BOB: v=1 taskRef=TK-7QF3KM storyRef=ST-12 status=open synced=2025-01-01T10:00:00Z
    #sprint: Sprint 4
    #theme: Home
    #story: ST-12
    #task: TK-7QF3KM
    #tags: errands, home
    #list: Home
    https://example.web.app/task/TK-7QF3KM

Everything outside the block is user text and is carried through untouched.
The block is always rewritten in full.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from ..utils.date import parse_iso
from ..utils.tags import parse_tag_line

SEPARATOR = "-------"
HEADER_TOKEN = "BOB:"
FORMAT_VERSION = "1"

# Header keys, in emission order
HEADER_KEYS = (
    "taskRef",
    "taskId",
    "storyRef",
    "goalRef",
    "sprintId",
    "status",
    "due",
    "synced",
    "list",
    "listId",
)

# (metadata key, line prefix), in emission order
EXTENSION_LINES = (
    ("sprint", "#sprint:"),
    ("theme", "#theme:"),
    ("storyRef", "#story:"),
    ("taskRef", "#task:"),
    ("goalRef", "#goal:"),
    ("tags", "#tags:"),
    ("list", "#list:"),
)

# Parsed when present but never written
READ_ONLY_LINES = (("listId", "#listId:"),)

# (metadata key, deep-link path segment)
LINK_KINDS = (
    ("taskRef", "task"),
    ("storyRef", "story"),
    ("goalRef", "goal"),
    ("sprintId", "sprint"),
)

RECOGNIZED_KEYS = frozenset(HEADER_KEYS) | {key for key, _ in EXTENSION_LINES}

_LEGACY_LINE_RE = re.compile(
    r"^\s*(taskRef|taskId|storyRef|goalRef|sprintId)\s*[:=]\s*(\S+)\s*$",
    re.IGNORECASE,
)
_LEGACY_CANONICAL = {key.lower(): key for key in ("taskRef", "taskId", "storyRef", "goalRef", "sprintId")}
_HEADER_SAFE = "/:@+-._~,#"

Metadata = Dict[str, str]


class NoteCodec:
    """Encodes and decodes the metadata block inside device notes."""

    def __init__(self, link_base: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.link_base = (link_base or "").rstrip("/")
        self._link_re = self._compile_link_re(self.link_base)

    @staticmethod
    def _compile_link_re(link_base: str) -> Optional[re.Pattern]:
        if not link_base:
            return None
        host_and_path = re.sub(r"^https?://", "", link_base, flags=re.IGNORECASE)
        return re.compile(
            r"^\s*https?://" + re.escape(host_and_path)
            + r"/(task|story|goal|sprint)/([^\s/?#]+)/?\s*$",
            re.IGNORECASE,
        )

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------
    def decode(self, notes: Optional[str]) -> Tuple[Metadata, List[str]]:
        """
        Split notes into (metadata, user lines).

        The last line starting with ``BOB:`` is the header. The block spans
        the separator line before it (plus one optional blank line before
        that) down through the contiguous run of ``#``/blank lines after it.
        Bare deep-link lines and ``key: value`` lines for recognized keys are
        absorbed into the metadata wherever they appear. Never raises.
        """
        if not notes:
            return {}, []

        lines = notes.replace("\r\n", "\n").split("\n")
        header_index = None
        for idx in range(len(lines) - 1, -1, -1):
            if lines[idx].startswith(HEADER_TOKEN):
                header_index = idx
                break

        metadata: Metadata = {}
        if header_index is None:
            user_lines = lines
        else:
            metadata.update(self._parse_header(lines[header_index]))

            scan = header_index + 1
            while scan < len(lines):
                line = lines[scan]
                stripped = line.strip()
                if stripped and not stripped.startswith("#"):
                    break
                if stripped:
                    self._parse_extension_line(stripped, metadata)
                scan += 1

            prefix_end = header_index
            if prefix_end > 0 and lines[prefix_end - 1].strip() == SEPARATOR:
                prefix_end -= 1
                if prefix_end > 0 and not lines[prefix_end - 1].strip():
                    prefix_end -= 1

            user_lines = lines[:prefix_end] + lines[scan:]

        kept: List[str] = []
        for line in user_lines:
            absorbed = self._absorb_legacy_line(line)
            if absorbed is None:
                kept.append(line)
                continue
            key, value = absorbed
            metadata.setdefault(key, value)

        return metadata, kept

    def _parse_header(self, line: str) -> Metadata:
        parsed: Metadata = {}
        body = line[len(HEADER_TOKEN):]
        for token in body.split(" "):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            key = key.strip()
            value = unquote(value.strip())
            if not key or not value:
                continue
            if key == "v":
                if value != FORMAT_VERSION:
                    self.logger.debug("Reading note header version %s as version %s", value, FORMAT_VERSION)
                continue
            parsed[key] = value
        return parsed

    @staticmethod
    def _parse_extension_line(line: str, metadata: Metadata) -> None:
        for key, prefix in EXTENSION_LINES + READ_ONLY_LINES:
            if line.startswith(prefix):
                value = line[len(prefix):].strip()
                if value:
                    metadata[key] = value
                return

    def _absorb_legacy_line(self, line: str) -> Optional[Tuple[str, str]]:
        if self._link_re is not None:
            match = self._link_re.match(line)
            if match:
                kind = match.group(1).lower()
                for key, segment in LINK_KINDS:
                    if segment == kind:
                        return key, unquote(match.group(2))
        match = _LEGACY_LINE_RE.match(line)
        if match:
            return _LEGACY_CANONICAL[match.group(1).lower()], match.group(2)
        return None

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------
    def encode(self, metadata: Metadata, user_lines: List[str], include_block: bool = True) -> str:
        """
        Compose notes from user lines and metadata.

        With ``include_block`` the separator, header and ``#`` lines are
        written after exactly one blank line; without it only the deep-link
        lines are appended (hidden metadata mode). Unknown keys are dropped.
        """
        lines = list(user_lines)
        values = {
            key: str(value).strip()
            for key, value in (metadata or {}).items()
            if value is not None and str(value).strip()
        }

        if include_block:
            if lines:
                lines.append("")
            lines.append(SEPARATOR)

            tokens = [f"v={FORMAT_VERSION}"]
            for key in HEADER_KEYS:
                if key in values:
                    tokens.append(f"{key}={quote(values[key], safe=_HEADER_SAFE)}")
            lines.append(" ".join([HEADER_TOKEN] + tokens))

            for key, prefix in EXTENSION_LINES:
                if key in values:
                    lines.append(f"{prefix} {values[key]}")

        lines.extend(self.deep_links(values))
        return "\n".join(lines)

    def deep_links(self, metadata: Metadata) -> List[str]:
        """Deep-link URL lines for the references present in ``metadata``."""
        if not self.link_base:
            return []
        links = []
        for key, segment in LINK_KINDS:
            value = (metadata.get(key) or "").strip()
            if value:
                links.append(f"{self.link_base}/{segment}/{quote(value, safe='')}")
        return links

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def synced_at(metadata: Metadata):
        """The ``synced`` timestamp from a decoded block, if parseable."""
        return parse_iso(metadata.get("synced"))

    @staticmethod
    def tags(metadata: Metadata) -> List[str]:
        """Tags carried in the ``#tags:`` line."""
        return parse_tag_line(metadata.get("tags"))
