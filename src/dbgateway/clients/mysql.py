from typing import Any, Dict, List, Optional

from pymysql.charset import charset_by_id
from pymysql.constants import FIELD_TYPE, FLAG

from dbgateway.clients.sqlalchemy import BaseSQLAlchemyClient
from dbgateway.models.config import EngineKind
from dbgateway.models.query import ColumnMetadata

# pymysql defines aliases (CHAR = TINY, INTERVAL = ENUM) after the real names.
_FIELD_TYPE_NAMES: Dict[int, str] = {}
for _name, _value in vars(FIELD_TYPE).items():
    if _name.isupper():
        _FIELD_TYPE_NAMES.setdefault(_value, _name)


def column_from_field(field) -> ColumnMetadata:
    """Maps a MySQL field descriptor onto column metadata using flag bit tests."""
    flags = field.flags
    try:
        charset = charset_by_id(field.charsetnr).name
    except Exception:
        charset = None
    return ColumnMetadata(
        name=field.name,
        type=_FIELD_TYPE_NAMES.get(field.type_code, "UNKNOWN"),
        nullable=not (flags & FLAG.NOT_NULL),
        primary_key=bool(flags & FLAG.PRI_KEY),
        auto_increment=bool(flags & FLAG.AUTO_INCREMENT),
        unsigned=bool(flags & FLAG.UNSIGNED),
        zerofill=bool(flags & FLAG.ZEROFILL),
        length=field.length,
        charset=charset,
    )


class MySQLClient(BaseSQLAlchemyClient):
    """MySQL over PyMySQL.

    The driver has no statement-level cancel, so a timed-out query may keep
    running on the server until it finishes.
    """

    kind = EngineKind.MYSQL
    label = "MySQL"

    def _engine_kwargs(self) -> Dict[str, Any]:
        kwargs = super()._engine_kwargs()
        connect_args: Dict[str, Any] = {}
        if self.config.timeout:
            connect_args["connect_timeout"] = max(1, self.config.timeout // 1000)
        if self.config.timezone:
            connect_args["init_command"] = f"SET time_zone = '{self.config.timezone}'"
        if self.config.ssl:
            connect_args["ssl"] = {"check_hostname": False}
        if connect_args:
            kwargs["connect_args"] = connect_args
        return kwargs

    def _column_metadata(self, cursor) -> List[ColumnMetadata]:
        result = getattr(cursor, "_result", None)
        fields = getattr(result, "fields", None)
        if not fields:
            return super()._column_metadata(cursor)
        return [column_from_field(f) for f in fields]

    def _list_databases(self) -> List[str]:
        return self._scalar_list("SHOW DATABASES")

    def _inspect_schema_name(self) -> Optional[str]:
        return self.config.database
