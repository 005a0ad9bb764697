import enum
from typing import TYPE_CHECKING, Optional, Type, TypeVar

import sqlalchemy.types as types
from sqlalchemy.engine.interfaces import Dialect

TEnum = TypeVar("TEnum", bound=enum.Enum)  # pylint: disable=invalid-name

if TYPE_CHECKING:
    EnumEngine = types.TypeDecorator[enum.Enum]  # pylint: disable=unsubscriptable-object
else:
    EnumEngine = types.TypeDecorator


class Enum(EnumEngine):
    """Stores a python enum by its value, the same string the services put on the wire"""

    impl = types.String(32)
    cache_ok = True

    def __init__(self, enum_cls: Type[enum.Enum]) -> None:
        super().__init__()
        self.enum_cls = enum_cls

    def process_bind_param(  # pylint: disable=no-self-use
        self, value: Optional[enum.Enum], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[str]:
        if value is None:
            return None
        stored = self.enum_cls(value).value
        assert isinstance(stored, str), f"{self.enum_cls} does not have string values"
        return stored

    def process_literal_param(self, value: Optional[enum.Enum], dialect: Dialect) -> Optional[str]:
        raise NotImplementedError()

    def process_result_value(  # pylint: disable=no-self-use
        self, value: Optional[str], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[enum.Enum]:
        if value is None:
            return None
        return self.enum_cls(value)
