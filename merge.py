"""
Merge policy for canonical records sharing an identifier.

Per attribute type:
    collection-of-text  set union (first-seen order kept for display)
    scalar-text         the longer non-empty value wins

A longer scalar is assumed to be the more complete one. That is a heuristic:
a padded or noisy value can beat a correct shorter one. Equal-length
distinct values resolve to the lexicographically smaller one so that
merge_movies(a, b) == merge_movies(b, a).
"""

import logging
from dataclasses import replace
from typing import Optional, Tuple

from constants import AttributeType
from models import ATTRIBUTE_TYPES, IDENTIFIER_ATTRIBUTE, MovieInfo

logger = logging.getLogger(__name__)


def merge_collection(
    existing: Optional[Tuple[str, ...]],
    incoming: Optional[Tuple[str, ...]],
) -> Optional[Tuple[str, ...]]:
    """Union of two collections; an absent side never removes values."""
    if incoming is None:
        return existing
    if not existing:
        return incoming if incoming or existing is None else existing

    seen = set(existing)
    merged = list(existing)
    for value in incoming:
        if value not in seen:
            seen.add(value)
            merged.append(value)
    if len(merged) == len(existing):
        return existing
    return tuple(merged)


def merge_text(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    """Keep the longer non-empty value."""
    if not incoming:
        return existing
    if not existing:
        return incoming
    if len(incoming) > len(existing):
        return incoming
    if len(incoming) == len(existing) and incoming < existing:
        return incoming
    return existing


def merge_movies(existing: MovieInfo, incoming: MovieInfo) -> MovieInfo:
    """
    Merge two MovieInfo records describing the same movie.

    Args:
        existing: Record already in the aggregate
        incoming: Newly normalized record

    Returns:
        Merged record (existing itself when nothing changed)

    Raises:
        ValueError: If the identifiers differ
    """
    if existing.imdb_id != incoming.imdb_id:
        raise ValueError(
            f"Cannot merge different movies: {existing.imdb_id} != {incoming.imdb_id}"
        )
    if existing is incoming:
        return existing

    changes = {}
    for name, attr_type in ATTRIBUTE_TYPES.items():
        if name == IDENTIFIER_ATTRIBUTE:
            continue

        current = getattr(existing, name)
        if attr_type == AttributeType.COLLECTION:
            merged = merge_collection(current, getattr(incoming, name))
        else:
            merged = merge_text(current, getattr(incoming, name))

        if merged is not current:
            changes[name] = merged

    if not changes:
        return existing

    logger.debug(
        f"Merged movie '{existing.title or incoming.title}' ({existing.imdb_id}): "
        f"{', '.join(sorted(changes))}"
    )
    return replace(existing, **changes)
