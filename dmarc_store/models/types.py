"""
Column types shared by the report tables

The lookup tables below are a storage format: the position of a value is the
integer written to the database, so the ordering must never change.
"""
import ipaddress
import json

from sqlalchemy import LargeBinary, SmallInteger, Text
from sqlalchemy.dialects.mysql import VARBINARY
from sqlalchemy.dialects.postgresql import INET
from sqlalchemy.types import TypeDecorator

ALIGNMENT_VALUES = ("fail", "unknown", "pass")
DISPOSITION_VALUES = ("reject", "quarantine", "none")


def lookup_index(values, value) -> int:
    """Storage code of a lookup value"""
    try:
        return values.index(value)
    except ValueError:
        raise ValueError(f"Unknown value: {value!r}, expected one of {', '.join(values)}")


class LookupIndex(TypeDecorator):
    """Stores one of a fixed tuple of strings as its position"""

    impl = SmallInteger
    cache_ok = True

    def __init__(self, values, *args, **kwargs):
        self.values = tuple(values)
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, int):
            return value
        return lookup_index(self.values, value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.values[int(value)]


class IPAddressType(TypeDecorator):
    """
    IPv4/IPv6 address column

    PostgreSQL uses its native INET type. Other backends store the packed
    network-order bytes (4 or 16) in a binary column. Values are exchanged
    as strings either way.
    """

    impl = LargeBinary
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(INET())
        if dialect.name in ("mysql", "mariadb"):
            return dialect.type_descriptor(VARBINARY(16))
        return dialect.type_descriptor(LargeBinary(16))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        address = ipaddress.ip_address(value)
        if dialect.name == "postgresql":
            return str(address)
        return address.packed

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return str(ipaddress.ip_interface(str(value)).ip)
        return str(ipaddress.ip_address(bytes(value)))


class JSONText(TypeDecorator):
    """JSON document in a TEXT column; None is stored as SQL NULL"""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return json.loads(value)
