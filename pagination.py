"""
Offset pagination helpers.

Page numbers are 1-based. The indicator math is pure so listings of any
collection (videos, comments) can share it.
"""
from typing import Any, Dict, Optional, Tuple, Union

import config
from errors import ValidationError

# Largest value a BSON int64 can carry
MAX_BSON_INT = 2**63 - 1


def parse_positive_int(value: Union[str, int, None], name: str, default: int, maximum: int = MAX_BSON_INT) -> int:
    """Parse a page/limit query value, falling back to default when absent."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a positive integer")
    if number < 1:
        raise ValidationError(f"{name} must be a positive integer")
    if number > maximum:
        raise ValidationError(f"{name} must not exceed {maximum}")
    return number


def parse_page_params(page: Union[str, int, None], limit: Union[str, int, None]) -> Tuple[int, int]:
    page_size = parse_positive_int(limit, "limit", config.DEFAULT_PAGE_LIMIT, config.MAX_PAGE_LIMIT)
    # page * limit must still fit the store's integer type
    page_number = parse_positive_int(page, "page", config.DEFAULT_PAGE, MAX_BSON_INT // page_size)
    return page_number, page_size


def skip_for(page: int, limit: int) -> int:
    return (page - 1) * limit


def has_next_page(total: int, page: int, limit: int) -> bool:
    return page * limit < total


def has_previous_page(page: int) -> bool:
    return page > 1


def page_indicators(total: int, page: int, limit: int) -> Dict[str, Any]:
    """
    Build the page indicator block of a listing response.

    nextPage is None once the current window reaches the end of the result
    set; previousPage is None on the first page.
    """
    next_page: Optional[int] = page + 1 if has_next_page(total, page, limit) else None
    previous_page: Optional[int] = page - 1 if has_previous_page(page) else None
    return {
        "currentPage": page,
        "limit": limit,
        "nextPage": next_page,
        "previousPage": previous_page,
    }
