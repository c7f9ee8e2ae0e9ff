"""Transaction log events and helpers to look them up."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

import requests

from .ipfsutil import ipfs_uri_to_url

_HTTP_TIMEOUT = 30.0


class MissingEventError(LookupError):
    """Raised when an expected event attribute is absent or incomplete."""


@dataclass(frozen=True)
class StringEventAttribute:
    key: str
    value: str
    index: bool = False


@dataclass(frozen=True)
class StringEvent:
    type: str
    attributes: List[StringEventAttribute] = field(default_factory=list)


@dataclass(frozen=True)
class TendermintTxLog:
    events: List[StringEvent] = field(default_factory=list)


class EventsMap(Dict[str, List[str]]):
    """Maps ``<event type>.<attribute key>`` to every value seen, in order."""

    def first(self, key: str) -> str:
        """Return the first value recorded under ``key``."""
        values = self.get(key)
        if not values:
            raise MissingEventError(f"no {key} in events")
        return values[0]

    def instantiate_contract_address(self) -> str:
        """Return the address of the outermost instantiated contract."""
        return self.first("instantiate._contract_address")

    def outer_instantiate_code_id(self) -> str:
        """Return the code id that belongs to the outermost instantiated contract."""
        try:
            contract_address = self.instantiate_contract_address()
        except MissingEventError as err:
            raise MissingEventError(f"failed to get outer contract address: {err}") from err
        addresses = self.get("instantiate._contract_address", [])
        try:
            code_id_index = addresses.index(contract_address)
        except ValueError:
            raise MissingEventError(
                f"instantiate code id not found for contract {contract_address}"
            ) from None
        code_ids = self.get("instantiate.code_id", [])
        if code_id_index >= len(code_ids):
            raise MissingEventError(
                f"not enough code ids, wanted {code_id_index + 1}, got {len(code_ids)}"
            )
        return code_ids[code_id_index]


def events_map_from_string_events(events: Iterable[StringEvent]) -> EventsMap:
    """Flatten events into an :class:`EventsMap`."""
    result = EventsMap()
    for event in events:
        for attr in event.attributes:
            result.setdefault(f"{event.type}.{attr.key}", []).append(attr.value)
    return result


def _parse_event(raw: Dict[str, Any]) -> StringEvent:
    attributes = [
        StringEventAttribute(
            key=attr.get("key", ""),
            value=attr.get("value", ""),
            index=bool(attr.get("index", False)),
        )
        for attr in raw.get("attributes") or []
    ]
    return StringEvent(type=raw.get("type", ""), attributes=attributes)


def parse_tx_logs(raw: Any) -> List[TendermintTxLog]:
    """Parse the JSON log of a transaction result into one log per message."""
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("tx log is not a JSON array")
    return [
        TendermintTxLog(events=[_parse_event(e) for e in entry.get("events") or []])
        for entry in data
    ]


def fetch_ipfs_json(uri: str) -> Any:
    """Download and decode a JSON document from an IPFS or HTTP URI."""
    response = requests.get(ipfs_uri_to_url(uri), timeout=_HTTP_TIMEOUT)
    if response.status_code != 200:
        raise requests.HTTPError(
            f"bad GET status: {response.status_code} {response.reason}",
            response=response,
        )
    try:
        return json.loads(response.content)
    except ValueError as err:
        raise ValueError(f"failed to unmarshal ipfs json: {err}") from err