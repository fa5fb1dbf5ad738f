"""
Field mapping normalizer.

Translates one decoded provider item into a canonical MovieInfo through the
provider's response mapping, coercing every value to the shape its attribute
type demands:

- collection-of-text: a scalar string is split on the delimiter and each
  element trimmed; a list is kept element by element
- scalar-text: a list is joined with the delimiter; strings are trimmed;
  numbers are rendered as text

Values equal to one of the provider's "missing" sentinels (OMDb answers
"N/A") are treated as absent. Records without an identifier are dropped so
they never reach the merge step.
"""

import logging
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from constants import AttributeType, DEFAULT_MISSING_VALUES, DELIMITER
from errors import MissingIdentifier
from metrics import metrics
from models import ATTRIBUTE_TYPES, IDENTIFIER_ATTRIBUTE, PROVIDERS_ATTRIBUTE, MovieInfo

logger = logging.getLogger(__name__)

CoercedValue = Union[None, str, Tuple[str, ...]]


def lookup_field(raw_fields: Mapping[str, Any], field_name: str) -> Tuple[bool, Any]:
    """
    Resolve a response field, following dots into nested objects.

    A literal key wins over the dotted path, so "a.b" still works for
    providers that use dots in flat field names.

    Returns:
        (found, value)
    """
    if field_name in raw_fields:
        return True, raw_fields[field_name]

    current: Any = raw_fields
    for part in field_name.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return False, None
    return True, current


def _to_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return None
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _is_missing(text: Optional[str], missing_values: Sequence[str]) -> bool:
    return not text or text in missing_values


def coerce_value(
    value: Any,
    attr_type: AttributeType,
    missing_values: Sequence[str] = DEFAULT_MISSING_VALUES,
) -> CoercedValue:
    """
    Coerce a raw value to the shape of its attribute type.

    Args:
        value: Raw provider value
        attr_type: Target attribute type
        missing_values: Sentinels meaning "not available"

    Returns:
        Text, tuple of texts, or None when the value is absent
    """
    if isinstance(value, Mapping):
        return None

    if attr_type == AttributeType.COLLECTION:
        if isinstance(value, str):
            if _is_missing(value.strip(), missing_values):
                return None
            elements = value.split(DELIMITER)
        elif isinstance(value, (list, tuple, set)):
            elements = list(value)
        else:
            elements = [value]

        texts = []
        for element in elements:
            text = _to_text(element)
            if _is_missing(text, missing_values) or text in texts:
                continue
            texts.append(text)
        return tuple(texts)

    if isinstance(value, (list, tuple, set)):
        parts = [_to_text(element) for element in value]
        text = DELIMITER.join(p for p in parts if not _is_missing(p, missing_values))
    else:
        text = _to_text(value)

    return None if _is_missing(text, missing_values) else text


def _require_identifier(provider_id: str, values: dict, field_name: Optional[str]) -> str:
    identifier = values.get(IDENTIFIER_ATTRIBUTE)
    if not identifier:
        raise MissingIdentifier(provider_id, field_name)
    return identifier


def normalize(
    provider_id: str,
    raw_fields: Mapping[str, Any],
    mapping: Mapping[str, Union[str, bool, None]],
    missing_values: Sequence[str] = DEFAULT_MISSING_VALUES,
) -> Optional[MovieInfo]:
    """
    Build a canonical record from one provider item.

    Args:
        provider_id: Name of the contributing provider
        raw_fields: Decoded provider item
        mapping: Canonical attribute -> provider field name (False = never supplied)
        missing_values: Provider sentinels meaning "not available"

    Returns:
        MovieInfo, or None when the identifier is missing
    """
    if not isinstance(raw_fields, Mapping):
        logger.debug(f"{provider_id}: skipping non-object item {type(raw_fields).__name__}")
        return None

    values = {}
    for attribute, field_name in mapping.items():
        if not field_name or attribute == PROVIDERS_ATTRIBUTE:
            continue

        attr_type = ATTRIBUTE_TYPES.get(attribute)
        if attr_type is None:
            logger.debug(f"{provider_id}: unknown canonical attribute '{attribute}' in mapping")
            continue

        found, raw_value = lookup_field(raw_fields, str(field_name))
        if not found or raw_value is None:
            continue

        value = coerce_value(raw_value, attr_type, missing_values)
        if value is not None:
            values[attribute] = value

    try:
        _require_identifier(provider_id, values, mapping.get(IDENTIFIER_ATTRIBUTE) or None)
    except MissingIdentifier as e:
        logger.warning(f"{e} - dropping record with {len(values)} other attributes")
        metrics.inc("records_dropped", labels={"provider": provider_id})
        return None

    values[PROVIDERS_ATTRIBUTE] = (provider_id,)
    return MovieInfo(**values)
