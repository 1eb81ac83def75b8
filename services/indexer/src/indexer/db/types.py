from sqlalchemy import String
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator


class IntMappedToString(TypeDecorator[int]):
    """
    EVM integers can be up to 32 bytes, which exceeds the 8 byte limit of most SQL integer
    types and the float precision SQLite falls back to for NUMERIC. Store them as a
    78 character VARCHAR (plus sign) which holds every uint256 exactly.
    """

    cache_ok = True
    impl = String(79)

    def process_bind_param(self, value: int | None, dialect: Dialect) -> str | None:
        return None if value is None else str(int(value))

    def process_result_value(self, value: str | None, dialect: Dialect) -> int | None:
        return None if value is None else int(value)
