import json
from typing import TYPE_CHECKING, Any, Dict, Optional

import sqlalchemy.types as types
from sqlalchemy.engine.interfaces import Dialect

if TYPE_CHECKING:
    JSONTextEngine = types.TypeDecorator[Dict[str, Any]]  # pylint: disable=unsubscriptable-object
else:
    JSONTextEngine = types.TypeDecorator


class JSONText(JSONTextEngine):
    # serialized with sorted keys so equal payloads are stored byte-for-byte equal
    impl = types.Text
    cache_ok = True

    def process_bind_param(  # pylint: disable=no-self-use
        self, value: Optional[Dict[str, Any]], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    def process_literal_param(self, value: Optional[Dict[str, Any]], dialect: Dialect) -> Optional[str]:
        raise NotImplementedError()

    def process_result_value(  # pylint: disable=no-self-use
        self, value: Optional[str], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        loaded = json.loads(value)
        assert isinstance(loaded, dict)
        return loaded
