"""
Data source resolution: default network, subnets and cross-stack outputs.

Lookups are resolved once, synchronously, before the graph is built. The
result is frozen so every stage of a plan sees the same view.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import AmbiguousLookup, LookupNotFound, RemoteStateUnavailable

logger = logging.getLogger(__name__)

DataSourceResult = Mapping[str, Any]


@dataclass(frozen=True)
class S3StateBackend:
    """Remote state document stored in S3."""
    bucket: str
    key: str
    region: str

    def describe(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


@dataclass(frozen=True)
class LocalStateBackend:
    """Remote state document on the local filesystem (e.g. another stack's outputs.json)."""
    path: str

    def describe(self) -> str:
        return self.path


StateBackend = Union[S3StateBackend, LocalStateBackend]


@dataclass(frozen=True)
class NetworkDefault:
    key: str = "vpc_id"


@dataclass(frozen=True)
class SubnetSetForNetwork:
    key: str = "subnet_ids"
    network_key: str = "vpc_id"


@dataclass(frozen=True)
class CrossStackOutput:
    """Read named outputs from another stack's state.

    ``outputs`` maps remote output name -> result key.
    """
    backend: StateBackend
    outputs: Mapping[str, str] = field(default_factory=dict)


LookupRequest = Union[NetworkDefault, SubnetSetForNetwork, CrossStackOutput]


class DataSourceProvider(ABC):
    """Read-only backend for data-source lookups."""

    @abstractmethod
    def default_networks(self) -> List[str]:
        """Return ids of every network flagged as default."""

    @abstractmethod
    def subnets(self, network_id: str) -> List[str]:
        """Return subnet ids belonging to a network."""

    @abstractmethod
    def read_state(self, backend: StateBackend) -> Dict[str, Any]:
        """Return the raw state document, raising RemoteStateUnavailable on failure."""


def _extract_outputs(document: Dict[str, Any]) -> Dict[str, Any]:
    """Accept both ``{"outputs": {k: {"value": v}}}`` and a bare ``{k: v}`` mapping."""
    outputs = document.get("outputs", document) if isinstance(document, dict) else None
    if not isinstance(outputs, dict):
        raise RemoteStateUnavailable("Remote state document has no outputs mapping")

    values = {}
    for name, entry in outputs.items():
        if isinstance(entry, dict) and "value" in entry:
            values[name] = entry["value"]
        else:
            values[name] = entry
    return values


def _read_local_state(backend: LocalStateBackend) -> Dict[str, Any]:
    path = Path(backend.path)
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise RemoteStateUnavailable(f"Cannot read state at {backend.describe()}: {e}") from e


class Boto3DataProvider(DataSourceProvider):
    """Data source provider backed by EC2 and S3 APIs."""

    def __init__(self, region: str):
        self.region = region
        self._ec2 = None
        self._s3_clients: Dict[str, Any] = {}

    def _get_ec2_client(self):
        """Lazy initialization of EC2 client."""
        if self._ec2 is None:
            self._ec2 = boto3.client('ec2', region_name=self.region)
        return self._ec2

    def _get_s3_client(self, region: str):
        if region not in self._s3_clients:
            self._s3_clients[region] = boto3.client('s3', region_name=region)
        return self._s3_clients[region]

    def default_networks(self) -> List[str]:
        response = self._get_ec2_client().describe_vpcs(
            Filters=[{'Name': 'isDefault', 'Values': ['true']}]
        )
        return [vpc['VpcId'] for vpc in response.get('Vpcs', [])]

    def subnets(self, network_id: str) -> List[str]:
        subnet_ids = []
        paginator = self._get_ec2_client().get_paginator('describe_subnets')
        for page in paginator.paginate(Filters=[{'Name': 'vpc-id', 'Values': [network_id]}]):
            for subnet in page.get('Subnets', []):
                subnet_ids.append(subnet['SubnetId'])
        return subnet_ids

    def read_state(self, backend: StateBackend) -> Dict[str, Any]:
        if isinstance(backend, LocalStateBackend):
            return _read_local_state(backend)

        try:
            response = self._get_s3_client(backend.region).get_object(
                Bucket=backend.bucket, Key=backend.key
            )
            return json.loads(response['Body'].read())
        except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
            raise RemoteStateUnavailable(f"Cannot read state at {backend.describe()}: {e}") from e


class StaticDataProvider(DataSourceProvider):
    """Serves fixed lookup data; used for offline plans and tests."""

    def __init__(
        self,
        default_networks: Optional[Sequence[str]] = None,
        subnets: Optional[Mapping[str, Sequence[str]]] = None,
        states: Optional[Mapping[str, Dict[str, Any]]] = None,
    ):
        self._default_networks = list(default_networks or [])
        self._subnets = {k: list(v) for k, v in (subnets or {}).items()}
        self._states = dict(states or {})

    @classmethod
    def from_json(cls, path: str) -> "StaticDataProvider":
        """
        Load offline lookup data from a JSON file.

        Expected keys: ``default_networks`` (list), ``subnets``
        (network id -> list) and ``states`` (backend description -> document).
        """
        with open(path, "r") as f:
            data = json.load(f)
        return cls(
            default_networks=data.get("default_networks"),
            subnets=data.get("subnets"),
            states=data.get("states"),
        )

    def default_networks(self) -> List[str]:
        return list(self._default_networks)

    def subnets(self, network_id: str) -> List[str]:
        return list(self._subnets.get(network_id, []))

    def read_state(self, backend: StateBackend) -> Dict[str, Any]:
        location = backend.describe()
        if location in self._states:
            return self._states[location]
        if isinstance(backend, LocalStateBackend):
            return _read_local_state(backend)
        raise RemoteStateUnavailable(f"No state available at {location}")


class CachingProvider(DataSourceProvider):
    """Memoizes another provider's answers for the lifetime of one plan."""

    def __init__(self, inner: DataSourceProvider):
        self.inner = inner
        self._cache: Dict[Any, Any] = {}

    def _cached(self, key, fn):
        if key not in self._cache:
            self._cache[key] = fn()
        return self._cache[key]

    def default_networks(self) -> List[str]:
        return list(self._cached(("default_networks",), self.inner.default_networks))

    def subnets(self, network_id: str) -> List[str]:
        return list(self._cached(("subnets", network_id), lambda: self.inner.subnets(network_id)))

    def read_state(self, backend: StateBackend) -> Dict[str, Any]:
        return self._cached(("state", backend), lambda: self.inner.read_state(backend))


def _resolve_default_network(provider: DataSourceProvider) -> str:
    candidates = provider.default_networks()
    if not candidates:
        raise LookupNotFound("No default network found")
    if len(candidates) > 1:
        raise AmbiguousLookup(f"Expected one default network, found {len(candidates)}: {', '.join(candidates)}")
    return candidates[0]


def _resolve_subnets(provider: DataSourceProvider, network_id: str) -> tuple:
    subnet_ids = provider.subnets(network_id)
    if not subnet_ids:
        raise LookupNotFound(f"No subnets found in network {network_id}")
    return tuple(sorted(subnet_ids))


def resolve_lookups(requests: Sequence[LookupRequest], provider: DataSourceProvider) -> DataSourceResult:
    """
    Resolve every lookup request, in order, into a frozen key -> value mapping.

    A ``SubnetSetForNetwork`` request reads its network id from a key resolved
    by an earlier request.

    Args:
        requests: Lookup requests
        provider: Read-only backend

    Returns:
        Immutable mapping of resolved values

    Raises:
        LookupNotFound, AmbiguousLookup, RemoteStateUnavailable
    """
    resolved: Dict[str, Any] = {}

    for request in requests:
        if isinstance(request, NetworkDefault):
            resolved[request.key] = _resolve_default_network(provider)

        elif isinstance(request, SubnetSetForNetwork):
            if request.network_key not in resolved:
                raise LookupNotFound(
                    f"Subnet lookup needs '{request.network_key}', which has not been resolved"
                )
            resolved[request.key] = _resolve_subnets(provider, resolved[request.network_key])

        elif isinstance(request, CrossStackOutput):
            outputs = _extract_outputs(provider.read_state(request.backend))
            missing = [name for name in request.outputs if name not in outputs]
            if missing:
                raise RemoteStateUnavailable(
                    f"State at {request.backend.describe()} is missing outputs: {', '.join(sorted(missing))}"
                )
            for name, key in request.outputs.items():
                resolved[key] = outputs[name]

        else:
            raise TypeError(f"Unsupported lookup request: {request!r}")

        logger.debug(f"Resolved lookup {request!r}")

    logger.info(f"Resolved {len(resolved)} data source values")
    return MappingProxyType(resolved)
