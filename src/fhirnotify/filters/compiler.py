"""Filter compiler: lowers a notification filter tree into Communication search parameters.

Supported fields and their search parameters:

- ``status``            -> ``status`` (comma-joined values, OR at the store)
- ``notification_type`` -> ``_tag`` (one parameter per type, AND at the store)
- ``context_name``      -> ``_tag``
- ``user_id``           -> ``recipient`` (comma-joined values, OR at the store)
- ``adapter_used``      -> ``identifier`` (adapter-used system)
- ``body_template``     -> ``identifier`` (body-template system)
- ``subject_template``  -> ``identifier`` (subject-template system)
- ``send_after_range``  -> ``sent:ge`` / ``sent:le``
- ``sent_at_range``     -> ``sent:ge`` / ``sent:le``
- ``created_at_range``  -> ``_lastUpdated:ge`` / ``_lastUpdated:le`` (last
  modification time; the store keeps no creation time)

Literal values are escaped so an embedded comma is not read as OR.

``_tag`` and ``identifier`` are emitted as one search parameter per
constraint, because a comma inside a single token parameter means OR to the
store. Every other parameter takes a single value, so two AND branches that
disagree on it are a contradiction and are reported, never resolved.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict

from fhirnotify.errors.exceptions import ConflictingFilterError, UnsupportedFilterError
from fhirnotify.mapping.conventions import (
    COMMUNICATION,
    NOTIFICATION_TAG,
    IdentifierSystem,
    escape_search_value,
    format_instant,
    search_status_for,
)
from fhirnotify.models.enums import StringLookupMode
from fhirnotify.models.filters import (
    FILTER_FIELDS,
    AndFilter,
    DateRange,
    FieldFilter,
    NotFilter,
    NotificationFilter,
    OrFilter,
    StringLookup,
    StringValue,
)

OR_UNSUPPORTED_MESSAGE = (
    "OR filters are not supported by FhirNotificationBackend (FHIR search does not support OR logic)."
)

NEGATION_SUFFIX = ":not"

# Parameters that may appear more than once; each occurrence is AND-ed
REPEATABLE_PARAMS = frozenset({"_tag", "_tag:not", "identifier", "identifier:not"})

NEGATABLE_FIELDS: tuple[str, ...] = (
    "status",
    "notification_type",
    "context_name",
    "user_id",
    "adapter_used",
    "body_template",
    "subject_template",
)

RANGE_FIELDS: tuple[str, ...] = ("send_after_range", "created_at_range", "sent_at_range")


class FilterCapabilities(BaseModel):
    """Static declaration of what ``FilterCompiler`` can express."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    logical_and: bool = True
    logical_or: bool = False
    logical_not: bool = True
    logical_not_nested: bool = False
    fields: tuple[str, ...] = FILTER_FIELDS
    negatable_fields: tuple[str, ...] = NEGATABLE_FIELDS
    string_lookups: tuple[StringLookupMode, ...] = (StringLookupMode.EXACT,)
    case_insensitive_lookups: bool = False

    def as_flags(self) -> dict[str, bool]:
        """Flatten into ``"<group>.<name>": bool`` flags."""
        flags = {
            "logical.and": self.logical_and,
            "logical.or": self.logical_or,
            "logical.not": self.logical_not,
            "logical.notNested": self.logical_not_nested,
        }
        for name in FILTER_FIELDS:
            flags[f"fields.{name}"] = name in self.fields
        for name in FILTER_FIELDS:
            flags[f"negation.{name}"] = name in self.negatable_fields
        for mode in StringLookupMode:
            if mode != StringLookupMode.EXACT:
                flags[f"stringLookups.{mode.value}"] = mode in self.string_lookups
        flags["stringLookups.caseInsensitive"] = self.case_insensitive_lookups
        return flags


CAPABILITIES = FilterCapabilities()


@dataclass
class QueryRequest:
    """A compiled search: resource type plus ordered, possibly repeated parameters."""

    resource_type: str
    params: list[tuple[str, str]] = field(default_factory=list)

    def values(self, name: str) -> list[str]:
        return [value for key, value in self.params if key == name]


class _ParamSet:
    """Search parameters under construction, keyed by name, preserving order."""

    def __init__(self) -> None:
        self._values: dict[str, list[str]] = {}

    def put(self, name: str, value: str) -> None:
        existing = self._values.get(name)
        if existing is None:
            self._values[name] = [value]
        elif name in REPEATABLE_PARAMS:
            if value not in existing:
                existing.append(value)
        elif existing[0] != value:
            raise ConflictingFilterError(name, existing[0], value)

    def merge(self, other: _ParamSet) -> None:
        for name, values in other._values.items():
            for value in values:
                self.put(name, value)

    def ensure_first(self, name: str, value: str) -> None:
        values = self._values.setdefault(name, [])
        if value not in values:
            values.insert(0, value)

    def __bool__(self) -> bool:
        return bool(self._values)

    def items(self) -> list[tuple[str, str]]:
        return [(name, value) for name, values in self._values.items() for value in values]


def _as_list(value) -> list:
    return value if isinstance(value, list) else [value]


def _resolve_string(field_name: str, value: StringValue) -> str:
    """Reduce a string predicate to the exact value to search for.

    Raises:
        UnsupportedFilterError: For a list of values, or for any lookup other
            than case-sensitive exact.
    """
    if isinstance(value, list):
        raise UnsupportedFilterError(
            f"{field_name} accepts a single value in FhirNotificationBackend, not a list.",
            field=field_name,
        )
    if not isinstance(value, StringLookup):
        return value
    if value.lookup != StringLookupMode.EXACT:
        raise UnsupportedFilterError(
            f"{field_name} lookup '{value.lookup.value}' is not supported by FhirNotificationBackend. "
            "Only exact string matching is supported.",
            field=field_name,
        )
    if value.case_sensitive is False:
        raise UnsupportedFilterError(
            f"{field_name} lookup with case_sensitive=False is not supported by FhirNotificationBackend. "
            "Only case-sensitive exact matching is supported.",
            field=field_name,
        )
    return value.value


def _put_range(params: _ParamSet, name: str, date_range: DateRange) -> None:
    if date_range.start is not None:
        params.put(f"{name}:ge", format_instant(date_range.start))
    if date_range.end is not None:
        params.put(f"{name}:le", format_instant(date_range.end))


# Each encoder adds one field's constraint under the given parameter suffix
# ("" or ":not").
def _encode_status(params: _ParamSet, value, suffix: str) -> None:
    statuses = []
    for status in _as_list(value):
        store_status = search_status_for(status).value
        if store_status not in statuses:
            statuses.append(store_status)
    if statuses:
        params.put(f"status{suffix}", ",".join(statuses))


def _encode_notification_type(params: _ParamSet, value, suffix: str) -> None:
    # One tag parameter per type; repeated tag parameters are AND-ed
    for notification_type in _as_list(value):
        params.put(f"_tag{suffix}", str(notification_type))


def _encode_context_name(params: _ParamSet, value, suffix: str) -> None:
    params.put(f"_tag{suffix}", escape_search_value(_resolve_string("context_name", value)))


def _encode_user_id(params: _ParamSet, value, suffix: str) -> None:
    user_ids = _as_list(value)
    if user_ids:
        params.put(f"recipient{suffix}", ",".join(escape_search_value(user_id) for user_id in user_ids))


def _encode_adapter_used(params: _ParamSet, value, suffix: str) -> None:
    adapters = _as_list(value)
    if adapters:
        params.put(
            f"identifier{suffix}",
            ",".join(f"{IdentifierSystem.ADAPTER_USED}|{escape_search_value(adapter)}" for adapter in adapters),
        )


def _encode_body_template(params: _ParamSet, value, suffix: str) -> None:
    body_template = _resolve_string("body_template", value)
    params.put(f"identifier{suffix}", f"{IdentifierSystem.BODY_TEMPLATE}|{escape_search_value(body_template)}")


def _encode_subject_template(params: _ParamSet, value, suffix: str) -> None:
    subject_template = _resolve_string("subject_template", value)
    params.put(f"identifier{suffix}", f"{IdentifierSystem.SUBJECT_TEMPLATE}|{escape_search_value(subject_template)}")


def _encode_send_after_range(params: _ParamSet, value: DateRange, suffix: str) -> None:
    _put_range(params, "sent", value)


def _encode_sent_at_range(params: _ParamSet, value: DateRange, suffix: str) -> None:
    _put_range(params, "sent", value)


def _encode_created_at_range(params: _ParamSet, value: DateRange, suffix: str) -> None:
    _put_range(params, "_lastUpdated", value)


_ENCODERS: dict[str, Callable[[_ParamSet, object, str], None]] = {
    "status": _encode_status,
    "notification_type": _encode_notification_type,
    "context_name": _encode_context_name,
    "user_id": _encode_user_id,
    "adapter_used": _encode_adapter_used,
    "body_template": _encode_body_template,
    "subject_template": _encode_subject_template,
    "send_after_range": _encode_send_after_range,
    "sent_at_range": _encode_sent_at_range,
    "created_at_range": _encode_created_at_range,
}


class FilterCompiler:
    """Compiles notification filter trees into Communication searches."""

    resource_type: str = COMMUNICATION

    def get_capabilities(self) -> FilterCapabilities:
        return CAPABILITIES

    def compile(
        self,
        notification_filter: NotificationFilter,
        page: int | None = None,
        page_size: int | None = None,
    ) -> QueryRequest:
        """Compile a filter tree, adding the notification marker tag and paging.

        Raises:
            UnsupportedFilterError: For OR anywhere in the tree, non-exact or
                case-insensitive string lookups, NOT over anything but a field
                filter, or a negated date range.
            ConflictingFilterError: When AND branches disagree on a parameter.
        """
        params = self._build(notification_filter)
        params.ensure_first("_tag", NOTIFICATION_TAG)
        if page_size is not None:
            params.put("_count", str(page_size))
            params.put("_offset", str((page or 0) * page_size))
        return QueryRequest(self.resource_type, params.items())

    def _build(self, node: NotificationFilter) -> _ParamSet:
        if isinstance(node, OrFilter):
            raise UnsupportedFilterError(OR_UNSUPPORTED_MESSAGE)
        if isinstance(node, AndFilter):
            return self._merge_and(node.children)
        if isinstance(node, NotFilter):
            return self._negate(node.child)
        if isinstance(node, FieldFilter):
            return self._encode_fields(node, suffix="")
        raise UnsupportedFilterError(f"Unknown filter node: {type(node).__name__}")

    def _merge_and(self, children: list[NotificationFilter]) -> _ParamSet:
        merged = _ParamSet()
        for child in children:
            merged.merge(self._build(child))
        return merged

    def _negate(self, inner: NotificationFilter) -> _ParamSet:
        if isinstance(inner, OrFilter):
            raise UnsupportedFilterError(OR_UNSUPPORTED_MESSAGE)
        if not isinstance(inner, FieldFilter):
            raise UnsupportedFilterError(
                "NOT filters are only supported for simple field filters in FhirNotificationBackend."
            )
        for name in inner.present_fields():
            if name in RANGE_FIELDS:
                raise UnsupportedFilterError(
                    f"NOT filter on {name} is not supported by FhirNotificationBackend.",
                    field=name,
                )
        params = self._encode_fields(inner, suffix=NEGATION_SUFFIX)
        if not params:
            raise UnsupportedFilterError(
                "NOT filter must contain at least one supported negatable field "
                f"({', '.join(NEGATABLE_FIELDS)})."
            )
        return params

    def _encode_fields(self, node: FieldFilter, suffix: str) -> _ParamSet:
        params = _ParamSet()
        for name in node.present_fields():
            _ENCODERS[name](params, getattr(node, name), suffix)
        return params
