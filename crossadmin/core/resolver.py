"""Find-or-create for display-name keyed directory objects."""
from __future__ import annotations
import logging
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)


def resolve_or_create(
    kind: str,
    display_name: str,
    find: Callable[[str], Iterable[dict]],
    create: Callable[[], dict],
) -> tuple[dict, bool]:
    """Return the entity whose displayName equals ``display_name``, creating it if absent.

    Display names are not unique on the platform. When several entities match,
    the one with the lowest id wins and a warning is logged.

    Args:
        kind: Entity kind, used in log messages (e.g. "group", "catalog")
        display_name: Idempotency key
        find: Query returning candidate entities for the display name
        create: Creates the entity and returns its representation

    Returns:
        (entity, was_created)
    """
    matches = [entity for entity in find(display_name) if entity.get("displayName") == display_name]
    if matches:
        matches.sort(key=lambda entity: str(entity.get("id", "")))
        chosen = matches[0]
        if len(matches) > 1:
            logger.warning(
                "[%s] %d entities share displayName '%s'; using id=%s",
                kind, len(matches), display_name, chosen.get("id"),
            )
        logger.info("[%s] '%s' already exists (id=%s)", kind, display_name, chosen.get("id"))
        return chosen, False

    created = create()
    logger.info("[%s] '%s' created (id=%s)", kind, display_name, created.get("id"))
    return created, True


def first_by_id(entities: Iterable[dict[str, Any]]) -> dict[str, Any] | None:
    """Deterministically pick one entity out of several (lowest id)."""
    ordered = sorted(entities, key=lambda entity: str(entity.get("id", "")))
    return ordered[0] if ordered else None
