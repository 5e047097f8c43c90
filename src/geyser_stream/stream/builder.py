"""
Subscription Request Builder
============================

Mutable accumulator of named filters that produces immutable
SubscriptionRequest snapshots.

Design Rules:
    - Validation happens in add_filter, before any network activity
    - A failed add leaves the builder unchanged
    - Adding an existing (kind, name) replaces the previous predicate
    - build() refuses a request with no filters at all

Example:
    request = (
        SubscriptionRequestBuilder()
        .add_filter(FilterKind.SLOTS, "slots", {"filter_by_commitment": True})
        .add_filter(FilterKind.ACCOUNTS, "usdc", {"account": [USDC_MINT]})
        .build(CommitmentLevel.CONFIRMED)
    )
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from geyser_stream.errors import ValidationError
from geyser_stream.models.subscription import (
    FILTER_MODELS,
    CommitmentLevel,
    DataSlice,
    FilterKind,
    SubscriptionRequest,
)


logger = logging.getLogger(__name__)

Predicate = Union[BaseModel, Mapping[str, Any], None]
SliceSpec = Union[DataSlice, Tuple[int, int], Mapping[str, int]]


def _first_error(error: PydanticValidationError) -> Tuple[str, Optional[str]]:
    details = error.errors()
    if not details:
        return str(error), None
    first = details[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return first.get("msg", str(error)), field


class SubscriptionRequestBuilder:
    """
    Accumulates named filters per kind.

    Example:
        builder = SubscriptionRequestBuilder()
        builder.add_filter("transactions", "non-vote", {"vote": False})
        request = builder.build("confirmed")
    """

    def __init__(self) -> None:
        self._filters: Dict[FilterKind, Dict[str, BaseModel]] = {
            kind: {} for kind in FilterKind
        }
        self._data_slice: Tuple[DataSlice, ...] = ()
        self._from_slot: Optional[int] = None

    @classmethod
    def from_request(cls, request: SubscriptionRequest) -> "SubscriptionRequestBuilder":
        """Seed a builder with every filter of an existing request."""
        builder = cls()
        for kind in FilterKind:
            builder._filters[kind].update(request.filters(kind))
        builder._data_slice = tuple(request.accounts_data_slice)
        builder._from_slot = request.from_slot
        return builder

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add_filter(
        self,
        kind: Union[FilterKind, str],
        name: str,
        predicate: Predicate = None,
    ) -> "SubscriptionRequestBuilder":
        """
        Add or replace a named filter.

        Args:
            kind: Filter kind
            name: Filter name, unique within the kind
            predicate: Filter model for the kind, or a mapping of its fields

        Returns:
            self, for chaining

        Raises:
            ValidationError: Unknown kind, empty name, or malformed predicate
        """
        kind = self._kind(kind)
        if not isinstance(name, str) or not name:
            raise ValidationError("filter name must be a non-empty string", field="name")

        model = FILTER_MODELS[kind]
        if predicate is None:
            predicate = {}

        if isinstance(predicate, BaseModel):
            if type(predicate) is not model:
                raise ValidationError(
                    f"{kind.value} filter must be {model.__name__}, "
                    f"got {type(predicate).__name__}",
                    field=name,
                )
            spec = predicate
        elif isinstance(predicate, Mapping):
            try:
                spec = model.model_validate(dict(predicate))
            except PydanticValidationError as e:
                message, field = _first_error(e)
                raise ValidationError(
                    f"invalid {kind.value} filter {name!r}: {message}",
                    field=field,
                ) from e
        else:
            raise ValidationError(
                f"unsupported predicate type {type(predicate).__name__}",
                field=name,
            )

        replaced = name in self._filters[kind]
        self._filters[kind][name] = spec
        logger.debug(f"{'Replaced' if replaced else 'Added'} {kind.value} filter {name!r}")
        return self

    def remove_filter(
        self,
        kind: Union[FilterKind, str],
        name: str,
    ) -> "SubscriptionRequestBuilder":
        """Remove a named filter; unknown names are ignored."""
        kind = self._kind(kind)
        if self._filters[kind].pop(name, None) is not None:
            logger.debug(f"Removed {kind.value} filter {name!r}")
        return self

    def clear(self, kind: Union[FilterKind, str, None] = None) -> "SubscriptionRequestBuilder":
        """Remove all filters of one kind, or of every kind."""
        kinds = list(FilterKind) if kind is None else [self._kind(kind)]
        for k in kinds:
            self._filters[k].clear()
        return self

    def set_accounts_data_slice(self, *slices: SliceSpec) -> "SubscriptionRequestBuilder":
        """
        Limit account data to the given (offset, length) windows.

        Calling with no arguments removes any slice.
        """
        parsed = []
        for item in slices:
            try:
                if isinstance(item, DataSlice):
                    parsed.append(item)
                elif isinstance(item, Mapping):
                    parsed.append(DataSlice.model_validate(dict(item)))
                else:
                    offset, length = item
                    parsed.append(DataSlice(offset=offset, length=length))
            except PydanticValidationError as e:
                message, field = _first_error(e)
                raise ValidationError(f"invalid data slice: {message}", field=field) from e
            except (TypeError, ValueError) as e:
                raise ValidationError(f"invalid data slice {item!r}: {e}") from e
        self._data_slice = tuple(parsed)
        return self

    def set_from_slot(self, slot: Optional[int]) -> "SubscriptionRequestBuilder":
        """Ask the server to replay from `slot` (None to disable)."""
        if slot is not None and (isinstance(slot, bool) or not isinstance(slot, int) or slot < 0):
            raise ValidationError("from_slot must be a non-negative integer", field="from_slot")
        self._from_slot = slot
        return self

    # -------------------------------------------------------------------------
    # Inspection / build
    # -------------------------------------------------------------------------

    def filters(self, kind: Union[FilterKind, str]) -> Dict[str, BaseModel]:
        """Copy of the named filters of one kind."""
        return dict(self._filters[self._kind(kind)])

    def is_empty(self) -> bool:
        return not any(self._filters.values())

    def build(
        self,
        commitment: Union[CommitmentLevel, str, None] = CommitmentLevel.PROCESSED,
    ) -> SubscriptionRequest:
        """
        Snapshot the accumulated filters.

        Args:
            commitment: Commitment level; None leaves the server default

        Raises:
            ValidationError: No filter of any kind, or unknown commitment
        """
        if self.is_empty():
            raise ValidationError("subscription request has no filters")

        if commitment is not None:
            try:
                commitment = CommitmentLevel(commitment)
            except ValueError as e:
                raise ValidationError(
                    f"unknown commitment level {commitment!r}", field="commitment"
                ) from e

        return SubscriptionRequest(
            commitment=commitment,
            accounts_data_slice=self._data_slice,
            from_slot=self._from_slot,
            **{kind.value: dict(specs) for kind, specs in self._filters.items()},
        )

    @staticmethod
    def _kind(kind: Union[FilterKind, str]) -> FilterKind:
        try:
            return FilterKind(kind)
        except ValueError as e:
            raise ValidationError(f"unknown filter kind {kind!r}", field="kind") from e


def builder_from_config(
    filters: Mapping[str, Mapping[str, Mapping[str, Any]]],
    data_slice: Iterable[SliceSpec] = (),
    from_slot: Optional[int] = None,
) -> SubscriptionRequestBuilder:
    """Build from a ``kind -> name -> predicate`` mapping (config file form)."""
    builder = SubscriptionRequestBuilder()
    for kind, named in filters.items():
        for name, predicate in (named or {}).items():
            builder.add_filter(kind, name, predicate or {})
    builder.set_accounts_data_slice(*data_slice)
    builder.set_from_slot(from_slot)
    return builder
