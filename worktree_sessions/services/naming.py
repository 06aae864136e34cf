"""Session ID naming and sanitization.

A session ID encodes (project, worktree, branch) as
``ccmgr-<project>-<worktree>-<branch>``. Each component is sanitized to
``[A-Za-z0-9_]`` so ``-`` only ever appears as a separator, which is what
makes the mapping reversible. The branch segment absorbs everything after
the second separator.

IDs are capped at MAX_SESSION_ID_LENGTH characters. Longer names are
truncated proportionally (see _truncate_components). Truncation is lossy:
two long, distinct triples can map to the same ID.
"""

import re

from worktree_sessions.exceptions import InvalidSessionIDError

SESSION_PREFIX = "ccmgr"
MAX_SESSION_ID_LENGTH = 50
MAX_COMPONENT_LENGTH = 20
TRUNCATION_MARKER = "~"
FALLBACK_COMPONENT = "unnamed"

_SEPARATOR_CHARS = "_-"
_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_]")
_SESSION_ID_PATTERN = re.compile(rf"^{SESSION_PREFIX}-([^-]+)-([^-]+)-(.+)$")


def sanitize_component(component: str) -> str:
    """Sanitize one name component.

    Replaces characters outside ``[A-Za-z0-9_]`` with ``_``, strips leading
    and trailing separators and caps the length. Never returns an empty
    string.

    Args:
        component: Raw project, worktree or branch name.

    Returns:
        The sanitized component, or "unnamed" if nothing usable remains.

    Examples:
        >>> sanitize_component("my-project@v1")
        'my_project_v1'
        >>> sanitize_component("@#$%")
        'unnamed'
    """
    if not component:
        return FALLBACK_COMPONENT

    sanitized = _INVALID_CHARS.sub("_", component).strip(_SEPARATOR_CHARS)
    if not sanitized:
        return FALLBACK_COMPONENT

    if len(sanitized) > MAX_COMPONENT_LENGTH:
        sanitized = sanitized[:MAX_COMPONENT_LENGTH].rstrip(_SEPARATOR_CHARS)

    return sanitized


def _truncate_components(project: str, worktree: str, branch: str) -> tuple[str, str, str]:
    """Shrink sanitized components so the joined ID fits the length bound.

    The budget left after the prefix and three separators is split evenly.
    Components over their share are cut to ``share - 1`` characters plus the
    truncation marker. Any slack left over is handed back to the cut
    components, branch first, then worktree, then project.
    """
    budget = MAX_SESSION_ID_LENGTH - len(SESSION_PREFIX) - 3
    share = budget // 3

    originals = [project, worktree, branch]
    parts = [p if len(p) <= share else p[: share - 1] + TRUNCATION_MARKER for p in originals]

    slack = budget - sum(len(p) for p in parts)
    for index in (2, 1, 0):
        if slack <= 0:
            break
        full = originals[index]
        if parts[index] == full:
            continue
        target = min(len(full), len(parts[index]) + slack)
        restored = full if target == len(full) else full[: target - 1] + TRUNCATION_MARKER
        slack -= len(restored) - len(parts[index])
        parts[index] = restored

    return parts[0], parts[1], parts[2]


def generate_session_id(project: str, worktree: str, branch: str) -> str:
    """Build the session ID for a (project, worktree, branch) triple.

    Args:
        project: Project name.
        worktree: Worktree name.
        branch: Branch name.

    Returns:
        A session ID no longer than MAX_SESSION_ID_LENGTH.
    """
    parts = (
        sanitize_component(project),
        sanitize_component(worktree),
        sanitize_component(branch),
    )

    session_id = "-".join((SESSION_PREFIX, *parts))
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        session_id = "-".join((SESSION_PREFIX, *_truncate_components(*parts)))

    return session_id


def validate_session_id(session_id: str) -> bool:
    """Check whether a string is a well-formed session ID."""
    if not session_id or not session_id.startswith(SESSION_PREFIX + "-"):
        return False
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        return False
    return _SESSION_ID_PATTERN.match(session_id) is not None


def parse_session_id(session_id: str) -> tuple[str, str, str]:
    """Split a session ID back into (project, worktree, branch).

    Args:
        session_id: A session ID produced by generate_session_id.

    Returns:
        The sanitized (project, worktree, branch) components.

    Raises:
        InvalidSessionIDError: If the string is not a well-formed session ID.
    """
    if not validate_session_id(session_id):
        raise InvalidSessionIDError(session_id)

    match = _SESSION_ID_PATTERN.match(session_id)
    project, worktree, branch = match.groups()
    return project, worktree, branch
