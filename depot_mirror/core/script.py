"""Generated title script (``{title_id}.lua``) parsing and regeneration.

A script registers the title and its depots with ``addappid`` calls and pins
each depot to a manifest with ``setManifestid``::

    -- Name: Example Game
    -- Updated: October 18, 2026 09:30:00 UTC
    addappid(480) -- Example Game
    addappid(481,0,"5a1c...") -- Example Game Content
    setManifestid(481,"7014451235452434617")

    -- DLCS WITHOUT DEDICATED DEPOTS
    addappid(482) -- Soundtrack

Edits are line-based so unrelated lines (tokens, comments, extra arguments)
survive regeneration untouched.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime

ADDAPPID_RE = re.compile(r"addappid\s*\(\s*(\d+)")
SET_MANIFEST_RE = re.compile(r'setManifestid\s*\(\s*(\d+)\s*,\s*"([^"]*)"')
MANIFEST_FILE_RE = re.compile(r"^(\d+)_(\d+)\.manifest$")

NAME_HEADER = "-- Name:"
UPDATED_HEADER = "-- Updated:"
DLC_SECTION = "-- DLCS WITHOUT DEDICATED DEPOTS"


def script_name(title_id: str) -> str:
    """Filename of a title's script."""
    return f"{title_id}.lua"


def metadata_name(title_id: str) -> str:
    """Filename of a title's depot metadata document."""
    return f"{title_id}.json"


def manifest_name(depot_id: str, manifest_id: str) -> str:
    """Filename of a manifest binary."""
    return f"{depot_id}_{manifest_id}.manifest"


def parse_manifest_filename(name: str) -> tuple[str, str] | None:
    """Split ``{depot}_{manifest}.manifest`` into its identifiers."""
    match = MANIFEST_FILE_RE.match(name)
    if not match:
        return None
    return match.group(1), match.group(2)


def format_timestamp(when: datetime) -> str:
    """Header timestamp, e.g. ``October 18, 2026 09:30:00 UTC``."""
    return when.strftime("%B %d, %Y %H:%M:%S UTC")


def referenced_ids(script: str) -> set[int]:
    """Every identifier registered with ``addappid`` in a script."""
    return {int(m.group(1)) for m in ADDAPPID_RE.finditer(script)}


def pinned_manifests(script: str) -> dict[str, str]:
    """Depot -> manifest pins declared with ``setManifestid``."""
    return {m.group(1): m.group(2) for m in SET_MANIFEST_RE.finditer(script)}


def update_header(script: str, updated_at: datetime) -> str:
    """Refresh the ``-- Updated:`` header, adding it below ``-- Name:`` if missing."""
    stamp = f"{UPDATED_HEADER} {format_timestamp(updated_at)}"
    lines = script.split("\n")

    for i, line in enumerate(lines):
        if line.startswith(UPDATED_HEADER):
            lines[i] = stamp
            return "\n".join(lines)

    for i, line in enumerate(lines):
        if line.startswith(NAME_HEADER):
            lines.insert(i + 1, stamp)
            return "\n".join(lines)

    return "\n".join([stamp, *lines])


def _depot_line(depot_id: str, key: str | None, label: str | None) -> str:
    line = f'addappid({depot_id},0,"{key}")' if key else f"addappid({depot_id})"
    return f"{line} -- {label}" if label else line


def new_script(
    title_id: str,
    name: str | None,
    manifests: Mapping[str, str],
    updated_at: datetime,
    keys: Mapping[str, str] | None = None,
) -> str:
    """Generate a script for a title that has none yet.

    Args:
        title_id: Title identifier
        name: Title display name
        manifests: Depot -> manifest pins, written in depot order
        updated_at: Header timestamp
        keys: Depot decryption keys, where known

    Returns:
        Script text ending in a newline
    """
    keys = keys or {}
    label = name or f"App {title_id}"
    lines = [
        f"{NAME_HEADER} {label}",
        f"{UPDATED_HEADER} {format_timestamp(updated_at)}",
        f"addappid({title_id}) -- {label}",
    ]
    for depot_id in sorted(manifests, key=int):
        lines.append(_depot_line(depot_id, keys.get(depot_id), None))
        lines.append(f'setManifestid({depot_id},"{manifests[depot_id]}")')
    return "\n".join(lines) + "\n"


def apply_manifests(
    script: str,
    manifests: Mapping[str, str],
    updated_at: datetime,
    keys: Mapping[str, str] | None = None,
) -> str:
    """Pin depots to new manifests in an existing script.

    Existing ``setManifestid`` lines are rewritten in place, keeping any
    trailing arguments. Depots without a pin get an ``addappid`` (unless
    already registered) and a ``setManifestid`` line, inserted ahead of the
    missing-DLC section.

    Returns:
        Updated script text
    """
    keys = keys or {}
    lines = script.rstrip("\n").split("\n") if script.strip() else []
    registered = referenced_ids(script)
    remaining = dict(manifests)

    for i, line in enumerate(lines):
        match = SET_MANIFEST_RE.search(line)
        if match and match.group(1) in remaining:
            manifest_id = remaining.pop(match.group(1))
            lines[i] = line[:match.start(2)] + manifest_id + line[match.end(2):]

    additions: list[str] = []
    for depot_id in sorted(remaining, key=int):
        if int(depot_id) not in registered:
            additions.append(_depot_line(depot_id, keys.get(depot_id), None))
        additions.append(f'setManifestid({depot_id},"{remaining[depot_id]}")')

    if additions:
        try:
            section = lines.index(DLC_SECTION)
        except ValueError:
            lines.extend(additions)
        else:
            while section > 0 and not lines[section - 1].strip():
                section -= 1
            lines[section:section] = additions

    return update_header("\n".join(lines), updated_at) + "\n"


def append_missing_dlc(
    script: str,
    dlc: Iterable[tuple[int, str]],
    updated_at: datetime,
) -> str:
    """Register DLC without dedicated depots under the missing-DLC section.

    Args:
        script: Current script text
        dlc: (identifier, display name) pairs; already registered ones are skipped
        updated_at: Header timestamp

    Returns:
        Updated script text (only the header changes if nothing was missing)
    """
    registered = referenced_ids(script)
    additions: list[str] = []
    for dlc_id, name in dlc:
        if dlc_id in registered:
            continue
        registered.add(dlc_id)
        additions.append(f"addappid({dlc_id}) -- {name}")

    body = script.rstrip()
    if additions:
        if DLC_SECTION in body:
            body = body + "\n" + "\n".join(additions)
        else:
            body = body + "\n\n" + DLC_SECTION + "\n" + "\n".join(additions)

    return update_header(body, updated_at) + "\n"
