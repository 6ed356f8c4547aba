"""Structured metadata embedded in free-text event descriptions.

A description is the visible text followed by an optional fenced YAML block::

    Customer visit, bring the spare router.


    ```yaml
    orderNumber: SO-1234
    systemType: backup
    ```

The block starts at the first ```` ```yaml\\n ```` (or ```` ```YAML\\n ````)
marker and ends at the next ```` ``` ````. Scanning uses ``str.find`` on an
input truncated to ``MAX_DESCRIPTION_LENGTH``, so adversarial descriptions
cannot trigger regex backtracking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import yaml

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 50_000
BLOCK_START_MARKERS = ("```yaml\n", "```YAML\n")
BLOCK_END_MARKER = "```"


@dataclass(frozen=True)
class ParseResult:
    ok: bool
    metadata: dict[str, Any] | None = None
    reason: str = ""

    @classmethod
    def success(cls, metadata: dict[str, Any] | None) -> "ParseResult":
        return cls(ok=True, metadata=metadata)

    @classmethod
    def failure(cls, reason: str) -> "ParseResult":
        return cls(ok=False, reason=reason)


@dataclass(frozen=True)
class DecodedDescription:
    text: str
    metadata: dict[str, Any] | None
    raw_block: str = ""


def parse_block(raw: str) -> ParseResult:
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        return ParseResult.failure(f"invalid yaml: {exc}")
    if payload is None:
        return ParseResult.success(None)
    if not isinstance(payload, dict):
        return ParseResult.failure(f"metadata must be a mapping, got {type(payload).__name__}")
    return ParseResult.success(payload)


def _find_block_start(description: str) -> int:
    positions = [description.find(marker) for marker in BLOCK_START_MARKERS]
    found = [pos for pos in positions if pos != -1]
    return min(found) if found else -1


def decode(description: str | None) -> DecodedDescription:
    if not description:
        return DecodedDescription(text=description or "", metadata=None)
    if len(description) > MAX_DESCRIPTION_LENGTH:
        logger.warning("Description exceeds %d characters, truncating before scan", MAX_DESCRIPTION_LENGTH)
        description = description[:MAX_DESCRIPTION_LENGTH]

    start = _find_block_start(description)
    if start == -1:
        return DecodedDescription(text=description, metadata=None)
    content_start = start + len(BLOCK_START_MARKERS[0])
    end = description.find(BLOCK_END_MARKER, content_start)
    if end == -1:
        return DecodedDescription(text=description, metadata=None)

    raw_block = description[content_start:end]
    result = parse_block(raw_block)
    if not result.ok:
        logger.debug("Ignoring malformed metadata block: %s", result.reason)
    text = (description[:start] + description[end + len(BLOCK_END_MARKER) :]).rstrip()
    return DecodedDescription(text=text, metadata=result.metadata, raw_block=raw_block)


def encode(text: str | None, metadata: dict[str, Any] | None) -> str:
    base = (text or "").rstrip()
    if not metadata:
        return base
    yaml_content = yaml.safe_dump(
        metadata,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    ).rstrip()
    separator = "\n\n" if base else ""
    return f"{base}{separator}\n```yaml\n{yaml_content}\n```\n"
