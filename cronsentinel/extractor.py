"""
Evidence extraction: apply a job's mail patterns to a candidate message.

Every pattern kind has exactly one handler in PATTERN_HANDLERS. A handler
returns ``(True, value)`` when it resolved a value, ``(False, None)`` when the
key should stay absent, and raises ExtractionPatternError when the pattern
itself is unusable. Pattern failures only skip that pattern.
"""

from __future__ import annotations

import html
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ExtractionPatternError
from .models import (
    PATTERN_JSON_PATH,
    PATTERN_KEYWORD,
    PATTERN_REGEX,
    VALID_PATTERN_KINDS,
    VERDICT_COMPLETE,
    VERDICT_NONE,
    VERDICT_PARTIAL,
    CandidateMessage,
    EvidenceResult,
    MailPattern,
    ordered_patterns,
)

logger = logging.getLogger(__name__)

PRE_BLOCK_RE = re.compile(r"<pre[^>]*>([\s\S]*?)</pre>", re.IGNORECASE)
LIST_INDEX_RE = re.compile(r"-?[0-9]+")
DELIMITED_REGEX_RE = re.compile(r"^/(.*)/([imsx]*)$", re.DOTALL)
REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}

HandlerResult = Tuple[bool, Any]

DURATION_PATTERNS = (
    re.compile(r"(?:処理時間|実行時間|所要時間)\s*[:：]\s*(\d+(?:\.\d+)?)\s*秒"),
    re.compile(r"execution time\s*[:=：]\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"processing time\s*[:=：]\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"elapsed\s*[:=：]\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"duration\s*[:=：]\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
)


def compile_pattern(value: str) -> re.Pattern[str]:
    """Compile a bare or ``/delimited/flags`` regular expression."""
    source = value
    flags = 0
    match = DELIMITED_REGEX_RE.match(value)
    if match and len(value) > 1:
        source = match.group(1)
        for flag in match.group(2):
            flags |= REGEX_FLAGS[flag]
    try:
        return re.compile(source, flags)
    except re.error as exc:
        raise ExtractionPatternError(f'Invalid regular expression "{value}": {exc}') from exc


def select_source_text(message: CandidateMessage, target: str) -> str:
    if target == "subject":
        return message.subject or ""
    if target == "body":
        return message.body or message.html or ""
    if target == "from":
        return message.from_addr or ""
    if target == "to":
        return message.to_addr or ""
    if target == "headers":
        if not message.headers:
            return ""
        return json.dumps(dict(message.headers), sort_keys=True, ensure_ascii=False)
    raise ExtractionPatternError(f'Unknown target field "{target}".')


def _apply_regex(pattern: MailPattern, text: str, message: CandidateMessage) -> HandlerResult:
    match = compile_pattern(pattern.value).search(text)
    if match is None:
        return False, None
    if match.re.groups and match.group(1) is not None:
        return True, match.group(1)
    return True, match.group(0)


def _apply_keyword(pattern: MailPattern, text: str, message: CandidateMessage) -> HandlerResult:
    return True, pattern.value in text


def find_json_block(text: str) -> Optional[str]:
    match = PRE_BLOCK_RE.search(text)
    if match:
        return html.unescape(match.group(1)).strip()
    stripped = text.strip()
    if stripped.startswith("{"):
        return stripped
    return None


def resolve_path(document: Any, path: str) -> HandlerResult:
    value = document
    for segment in path.split("."):
        if isinstance(value, dict) and segment in value:
            value = value[segment]
        elif isinstance(value, list) and LIST_INDEX_RE.fullmatch(segment) and -len(value) <= int(segment) < len(value):
            value = value[int(segment)]
        else:
            return False, None
    return True, value


def _apply_json_path(pattern: MailPattern, text: str, message: CandidateMessage) -> HandlerResult:
    block = find_json_block(text)
    if block is None and pattern.target == "body" and message.html:
        # Plain-text renderings drop <pre> markers; look in the raw HTML part.
        block = find_json_block(message.html)
    if block is None:
        logger.debug("No JSON block found for pattern %s", pattern.name)
        return False, None
    try:
        document = json.loads(block)
    except ValueError as exc:
        raise ExtractionPatternError(f"Malformed JSON for pattern {pattern.name}: {exc}") from exc
    return resolve_path(document, pattern.value)


PATTERN_HANDLERS: Dict[str, Callable[[MailPattern, str, CandidateMessage], HandlerResult]] = {
    PATTERN_REGEX: _apply_regex,
    PATTERN_KEYWORD: _apply_keyword,
    PATTERN_JSON_PATH: _apply_json_path,
}

if set(PATTERN_HANDLERS) != VALID_PATTERN_KINDS:
    raise RuntimeError(
        f"Pattern handlers {sorted(PATTERN_HANDLERS)} do not cover kinds {sorted(VALID_PATTERN_KINDS)}"
    )


def reported_duration(text: str) -> Optional[float]:
    """Runtime the job reported about itself, e.g. "Execution time: 123s"."""
    if not text:
        return None
    for regex in DURATION_PATTERNS:
        match = regex.search(text)
        if match:
            return float(match.group(1))
    return None


def required_satisfied(fields: Dict[str, Any], patterns: Sequence[MailPattern]) -> bool:
    return all(pattern.extraction_name in fields for pattern in patterns if pattern.required)


def extract(message: CandidateMessage, patterns: Sequence[MailPattern]) -> EvidenceResult:
    fields: Dict[str, Any] = {}
    errors: List[str] = []
    for pattern in ordered_patterns(patterns):
        handler = PATTERN_HANDLERS.get(pattern.kind)
        if handler is None:
            logger.warning("Unsupported pattern kind %s in pattern %s", pattern.kind, pattern.name)
            errors.append(pattern.name)
            continue
        try:
            text = select_source_text(message, pattern.target)
            if not text:
                continue
            found, value = handler(pattern, text, message)
        except ExtractionPatternError as exc:
            logger.warning("Pattern %s skipped for message %s: %s", pattern.name, message.message_id, exc)
            errors.append(pattern.name)
            continue
        if found:
            fields[pattern.extraction_name] = value

    verdict = VERDICT_COMPLETE if required_satisfied(fields, patterns) else VERDICT_PARTIAL
    return EvidenceResult(
        fields=fields,
        verdict=verdict,
        message_id=message.message_id,
        received_at=message.received_at,
        errors=tuple(errors),
        duration_seconds=reported_duration(message.body),
    )


def select_candidate(messages: Sequence[CandidateMessage]) -> Optional[CandidateMessage]:
    """Newest message by receipt time; ties keep the first one returned."""
    candidate: Optional[CandidateMessage] = None
    for message in messages:
        if candidate is None or message.received_at > candidate.received_at:
            candidate = message
    return candidate


def evaluate_pool(messages: Sequence[CandidateMessage], patterns: Sequence[MailPattern]) -> EvidenceResult:
    candidate = select_candidate(messages)
    if candidate is None:
        return EvidenceResult(fields={}, verdict=VERDICT_NONE)
    if len(messages) > 1:
        logger.debug(
            "Using newest of %s candidate messages: %s", len(messages), candidate.message_id
        )
    return extract(candidate, patterns)
