"""Resolution of user-named documents to vault paths."""

from __future__ import annotations

from vault_assistant.ingest.vault import file_name, file_stem


def resolve_mentions(names: list[str], candidates: list[str]) -> tuple[list[str], list[str]]:
    """Map mention names to document paths.

    Each name is matched case-insensitively against the candidates in sorted
    path order: first an exact document name (with or without extension),
    then a substring of the document name, then a substring of the full path.
    Returns `(resolved_paths, missing_names)`; resolved paths keep mention
    order and are de-duplicated.
    """

    ordered = sorted(candidates)
    resolved: list[str] = []
    missing: list[str] = []

    for raw in names:
        name = raw.strip()
        if not name:
            continue
        path = _match(name.lower(), ordered)
        if path is None:
            missing.append(name)
        elif path not in resolved:
            resolved.append(path)

    return resolved, missing


def _match(needle: str, candidates: list[str]) -> str | None:
    for path in candidates:
        if needle in (file_stem(path).lower(), file_name(path).lower(), path.lower()):
            return path
    for path in candidates:
        if needle in file_name(path).lower():
            return path
    for path in candidates:
        if needle in path.lower():
            return path
    return None
