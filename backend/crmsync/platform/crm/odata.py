"""OData literal helpers shared by the batch builder and the query client."""

from typing import Any, Iterable, Optional, Sequence
from urllib.parse import quote, urlencode

# Service protection error codes returned inside the body of throttled calls.
THROTTLING_ERROR_CODES = ("0x80072321", "0x80072322", "0x80072326")

ODATA_HEADERS = {
    "OData-MaxVersion": "4.0",
    "OData-Version": "4.0",
    "Accept": "application/json",
}


def escape_string_literal(value: str) -> str:
    """Double single quotes so a value can sit inside an OData string literal."""
    return value.replace("'", "''")


def is_numeric_key(value: Any) -> bool:
    """Integers are addressed unquoted; bool is an int subclass and is excluded."""
    return isinstance(value, int) and not isinstance(value, bool)


def format_key_segment(key_field: str, value: Any) -> str:
    """Render ``key=value`` for alternate-key addressing in a URL path.

    Integers are embedded as-is. Everything else is stringified, quote-doubled,
    percent-encoded (RFC 3986 unreserved characters kept) and single-quoted.

    Args:
        key_field: Alternate-key column
        value: Alternate-key value from the payload

    Returns:
        Path-safe key predicate, e.g. ``dc_name='O%27%27Brien'``
    """
    if is_numeric_key(value):
        return f"{key_field}={value}"
    encoded = quote(escape_string_literal(str(value)), safe="")
    return f"{key_field}='{encoded}'"


def bind_reference(collection: str, identifier: str) -> str:
    """Build a typed reference literal for ``field@odata.bind`` payload entries."""
    return f"/{collection}({identifier})"


def build_or_filter(field: str, values: Sequence[str], numeric: bool = False) -> str:
    """Build ``field eq v1 or field eq v2 ...`` for a bulk lookup."""
    if numeric:
        return " or ".join(f"{field} eq {v}" for v in values)
    return " or ".join(f"{field} eq '{escape_string_literal(v)}'" for v in values)


def build_query_url(
    base_url: str,
    collection: str,
    select: Iterable[str],
    filter_expression: Optional[str] = None,
) -> str:
    """Build a collection query URL with $select and optional $filter."""
    params = {"$select": ",".join(dict.fromkeys(select))}
    if filter_expression:
        params["$filter"] = filter_expression
    return f"{base_url}/{collection}?{urlencode(params, quote_via=quote, safe='$,')}"
