"""
Domain resolution for incoming requests.

System routes always check in "system". Group and project routes look for the
entity id, in order:

1. an explicitly supplied domain of the route's family,
2. the path parameter ``id``,
3. the query parameter ``group_id`` / ``project_id``.

The first value that parses as a positive integer of at most 20 digits wins. When nothing usable
is found the resolver returns ``None`` and the caller decides whether the
route skips the check or denies.
"""
from typing import Mapping, Optional

from app.features.permissions.errors import InvalidValueError
from app.features.permissions.types import MAX_ENTITY_ID_DIGITS, Domain, Level, concrete_domain
from app.utils import get_logger


log = get_logger(__name__)

PATH_ID_PARAM = "id"


def parse_entity_id(value: Optional[str]) -> Optional[int]:
    """Positive integer of at most MAX_ENTITY_ID_DIGITS digits, or None."""
    if not value or len(value) > MAX_ENTITY_ID_DIGITS or not value.isascii() or not value.isdigit():
        return None
    entity_id = int(value)
    return entity_id if entity_id > 0 else None


def resolve_domain(
    level: Level,
    path_params: Mapping[str, str],
    query_params: Mapping[str, str],
    explicit: Optional[str] = None,
) -> Optional[Domain]:
    if level is Level.SYSTEM:
        return Domain.system()

    if explicit:
        try:
            domain = concrete_domain(explicit)
        except InvalidValueError:
            domain = None
        if domain is not None and domain.startswith(f"{level.value}:"):
            return domain
        log.debug(f"Ignoring explicit domain {explicit!r} for {level.value} level")

    candidates = (path_params.get(PATH_ID_PARAM), query_params.get(level.query_param))
    for raw in candidates:
        entity_id = parse_entity_id(raw)
        if entity_id is not None:
            return level.domain_for(entity_id)
    return None
