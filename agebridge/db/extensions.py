"""
Per-connection extension initializers.

The pool runs each initializer once for every physical connection, in
registration order, the first time that connection is leased. ``cleanup``
runs every time the connection goes back to the pool. Initializers must be
idempotent: a connection can be re-initialized after it was recycled.

A failing ``critical`` initializer makes the lease fail; a failing
non-critical one is logged and skipped.
"""

from typing import TYPE_CHECKING, List, Sequence

from agebridge.core.config import BridgeConfig
from agebridge.core.logger import setup_logger

if TYPE_CHECKING:
    from agebridge.db.pool import PooledConnection

logger = setup_logger(__name__, include_location=True)

AGE_PARAMS_TABLE = "age_params"
AGE_CLIENT_SCHEMA = "age_schema_client"


class ExtensionInitializer:
    """
    Base class for per-connection session setup.
    """

    name: str = "extension"
    critical: bool = False

    async def initialize(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        raise NotImplementedError

    async def cleanup(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        return None

    def search_path_schemas(self) -> List[str]:
        """Schemas this initializer appends to the session search path."""
        return []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, critical={self.critical})"


_AGE_PARAM_FUNCTIONS = f"""
CREATE OR REPLACE FUNCTION {AGE_CLIENT_SCHEMA}.get_age_param(param_key text)
RETURNS ag_catalog.agtype AS $$
DECLARE
  result_json JSONB;
BEGIN
  SELECT value INTO result_json FROM {AGE_PARAMS_TABLE} WHERE key = param_key;
  IF result_json IS NULL THEN
    RETURN NULL;
  END IF;
  RETURN result_json::text::ag_catalog.agtype;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION {AGE_CLIENT_SCHEMA}.get_age_param(param_key ag_catalog.agtype)
RETURNS ag_catalog.agtype AS $$
DECLARE
  key_text TEXT;
  result_json JSONB;
BEGIN
  key_text := REPLACE(param_key::text, '"', '');
  SELECT value INTO result_json FROM {AGE_PARAMS_TABLE} WHERE key = key_text;
  IF result_json IS NULL THEN
    RETURN NULL;
  END IF;
  RETURN result_json::text::ag_catalog.agtype;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION {AGE_CLIENT_SCHEMA}.get_all_age_params()
RETURNS ag_catalog.agtype AS $$
DECLARE
  result_json JSONB;
BEGIN
  SELECT jsonb_object_agg(key, value) INTO result_json FROM {AGE_PARAMS_TABLE};
  IF result_json IS NULL THEN
    RETURN '{{}}'::text::ag_catalog.agtype;
  END IF;
  RETURN result_json::text::ag_catalog.agtype;
END;
$$ LANGUAGE plpgsql;
"""


class AgeExtensionInitializer(ExtensionInitializer):
    """
    Apache AGE session setup: ``LOAD 'age'``, search path with ``ag_catalog``
    and the ``age_params`` scratch table.

    Args:
        install_param_functions: Also create the ``age_schema_client``
            helper functions reading ``age_params`` from Cypher
        create_extension: Run ``CREATE EXTENSION IF NOT EXISTS age`` first
    """

    name = "age"
    critical = True

    def __init__(self, install_param_functions: bool = False, create_extension: bool = False):
        self.install_param_functions = install_param_functions
        self.create_extension = create_extension

    async def initialize(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        if self.create_extension:
            await conn.query("CREATE EXTENSION IF NOT EXISTS age")
        await conn.query("LOAD 'age'")
        await conn.query(f"SET search_path TO {config.search_path}")
        await conn.query(
            f"CREATE TEMP TABLE IF NOT EXISTS {AGE_PARAMS_TABLE} (key text PRIMARY KEY, value jsonb)"
        )
        result = await conn.query("SHOW search_path")
        current = str(result.scalar() or "")
        if "ag_catalog" not in current:
            logger.warning(f"search_path '{current}' does not contain ag_catalog after AGE setup")

        if self.install_param_functions:
            await conn.query(f"CREATE SCHEMA IF NOT EXISTS {AGE_CLIENT_SCHEMA}")
            await conn.query(_AGE_PARAM_FUNCTIONS)
        logger.debug(f"AGE initialized on connection {conn.pid}")

    async def cleanup(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        await conn.query(f"TRUNCATE TABLE {AGE_PARAMS_TABLE}")


class PgVectorExtensionInitializer(ExtensionInitializer):
    name = "pgvector"

    async def initialize(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        await conn.query("CREATE EXTENSION IF NOT EXISTS vector")


class PostGISExtensionInitializer(ExtensionInitializer):
    name = "postgis"

    async def initialize(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        await conn.query("CREATE EXTENSION IF NOT EXISTS postgis")


class SearchPathInitializer(ExtensionInitializer):
    """Append schemas to the configured search path."""

    name = "search_path"

    def __init__(self, additional_schemas: Sequence[str]):
        self.additional_schemas = [s.strip() for s in additional_schemas if s and s.strip()]

    def search_path_schemas(self) -> List[str]:
        return list(self.additional_schemas)

    async def initialize(self, conn: "PooledConnection", config: BridgeConfig) -> None:
        if not self.additional_schemas:
            return
        await conn.query(f"SET search_path TO {config.search_path}, {', '.join(self.additional_schemas)}")


def default_initializers() -> List[ExtensionInitializer]:
    return [AgeExtensionInitializer()]


__all__ = [
    "AGE_PARAMS_TABLE",
    "AGE_CLIENT_SCHEMA",
    "ExtensionInitializer",
    "AgeExtensionInitializer",
    "PgVectorExtensionInitializer",
    "PostGISExtensionInitializer",
    "SearchPathInitializer",
    "default_initializers",
]
