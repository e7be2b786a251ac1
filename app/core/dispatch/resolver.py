# app/core/dispatch/resolver.py
from __future__ import annotations

from typing import Iterable

from app.core.dispatch.domain import (
    ALL_GROUPS,
    UNGROUPED,
    DeliveryEndpoint,
    Principal,
)
from app.core.dispatch.errors import ResolutionWarning
from app.core.dispatch.ports import EndpointDirectory
from app.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)


def normalize_selectors(selectors: Iterable[str] | None) -> list[str]:
    """Strip, drop blanks and duplicates. No selectors at all means ``all``."""
    seen: list[str] = []
    for token in selectors or ():
        token = str(token).strip()
        if token and token not in seen:
            seen.append(token)
    return seen or [ALL_GROUPS]


async def resolve_targets(
    directory: EndpointDirectory,
    principal: Principal,
    selectors: Iterable[str] | None,
    warnings: list[str] | None = None,
) -> list[DeliveryEndpoint]:
    """
    Expand group selectors into the principal's active endpoints.

    ``all`` wins over every other token.  ``ungrouped`` selects endpoints
    without a group.  Unknown tokens are logged and dropped (and appended
    to ``warnings`` when given); they never fail the resolution.  The
    result keeps the directory's order and may be empty.
    """
    log = LogContext(logger, user_id=principal.id)
    tokens = normalize_selectors(selectors)
    endpoints = await directory.list_active(principal.id)

    if ALL_GROUPS in tokens:
        log.debug(f"Selector 'all' resolved to {len(endpoints)} endpoints")
        return list(endpoints)

    known_groups = await directory.group_ids(principal.id)
    wanted_groups: set[str] = set()
    include_ungrouped = False

    for token in tokens:
        if token == UNGROUPED:
            include_ungrouped = True
        elif token in known_groups:
            wanted_groups.add(token)
        else:
            warning = ResolutionWarning(token)
            log.warning(str(warning), extra={"selector": token})
            if warnings is not None:
                warnings.append(str(warning))

    resolved = [
        ep for ep in endpoints
        if (ep.group_id is None and include_ungrouped) or (ep.group_id in wanted_groups)
    ]
    log.debug(f"Selectors {tokens} resolved to {len(resolved)} endpoints")
    return resolved
