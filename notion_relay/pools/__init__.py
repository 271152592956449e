from notion_relay.pools.base import Outcome, PoolEntry, PoolPolicy, PoolState, RotatingPool
from notion_relay.pools.credentials import Credential, CredentialPool, build_credentials
from notion_relay.pools.egress import DIRECT_ROUTE_ID, EgressPool, EgressRoute, build_routes

__all__ = [
    "DIRECT_ROUTE_ID",
    "Credential",
    "CredentialPool",
    "EgressPool",
    "EgressRoute",
    "Outcome",
    "PoolEntry",
    "PoolPolicy",
    "PoolState",
    "RotatingPool",
    "build_credentials",
    "build_routes",
]
