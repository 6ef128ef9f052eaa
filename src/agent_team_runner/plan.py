"""Select which workers a run requires from a checklist document."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, Iterable, Sequence, Union

from .constants import WORKER_ALIASES
from .errors import PlanError
from .utils import _snake_case

PlanSelector = Callable[[Sequence[str]], list[str]]

_CHECKBOX_RE = re.compile(r"^\s*(?:[-*+]\s+|\d+[.)]\s+)?\[(?P<mark>[ xX])\]\s+(?P<name>.+?)\s*$")
_TRAILING_NOTE_RE = re.compile(r"\s+(?:[-:(–—].*)$")


def normalize_worker_id(name: str) -> str:
    """Map a display name such as "Backend Developer" to a worker id."""
    cleaned = re.sub(r"[*_`]", " ", name)
    cleaned = _TRAILING_NOTE_RE.sub("", cleaned.strip())
    key = _snake_case(cleaned)
    if key in WORKER_ALIASES:
        return WORKER_ALIASES[key]
    for suffix in ("_agent", "_worker"):
        if key.endswith(suffix) and key[: -len(suffix)] in WORKER_ALIASES:
            return WORKER_ALIASES[key[: -len(suffix)]]
    return key


def parse_checklist(text: str) -> dict[str, bool]:
    """Read `[x] Name` / `[ ] Name` lines into a worker -> required mapping.

    Later lines win when a worker appears more than once.
    """
    entries: dict[str, bool] = {}
    for line in text.splitlines():
        match = _CHECKBOX_RE.match(line)
        if not match:
            continue
        worker_id = normalize_worker_id(match.group("name"))
        if not worker_id:
            continue
        entries[worker_id] = match.group("mark").lower() == "x"
    return entries


def checklist_selector(source: Union[Path, str]) -> PlanSelector:
    """Build a selector keeping the candidates checked in a checklist document.

    Args:
        source: Path to a markdown plan, or the markdown text itself.

    Raises:
        PlanError: If the file cannot be read or has no checklist entries.
    """
    if isinstance(source, Path):
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as exc:
            raise PlanError(f"Cannot read plan {source}: {exc}") from exc
    else:
        text = source
    entries = parse_checklist(text)
    if not entries:
        raise PlanError("Plan has no checklist entries ('[x] Worker' / '[ ] Worker')")

    def select(candidates: Sequence[str]) -> list[str]:
        return [wid for wid in candidates if entries.get(wid, False)]

    return select


def all_selector(candidates: Sequence[str]) -> list[str]:
    return list(candidates)


def parse_worker_list(raw: Union[str, Iterable[str], None]) -> list[str]:
    """Parse a comma separated `--workers` value into normalized ids."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    out: list[str] = []
    for item in items:
        item = str(item).strip()
        if not item:
            continue
        wid = normalize_worker_id(item)
        if wid not in out:
            out.append(wid)
    return out
