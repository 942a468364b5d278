"""
Supabase Store
Reads migrated tables from the Supabase Postgres database for comparison
"""

from typing import Any, Dict, List, Optional
import structlog
from sqlalchemy import MetaData, Table, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.exceptions import UpstreamUnavailable
from app.services.monitoring.circuit_breakers import get_supabase_breaker, CircuitBreakerError

logger = structlog.get_logger(__name__)


class SupabaseStore:
    """
    Read-only access to the migration target tables.

    Tables are reflected on each fetch so schema changes during the
    migration do not require a redeploy. Calls go through the "supabase"
    circuit breaker; failures are raised as UpstreamUnavailable("supabase", ...).
    """

    name = "supabase"

    def __init__(
        self,
        engine: Optional[Engine],
        batch_column: Optional[str] = None,
        program_column: Optional[str] = None
    ):
        self.engine = engine
        self.batch_column = batch_column or settings.reconciliation_batch_column
        self.program_column = program_column or settings.reconciliation_program_column

    def ping(self) -> Dict[str, Any]:
        """Run SELECT 1."""
        self._guard(self._select_one)
        return {"dialect": self.engine.dialect.name}

    def fetch_records(
        self,
        table: str,
        batch: Optional[str] = None,
        program: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        All rows of a table, optionally filtered by batch/program columns.

        Raises:
            UpstreamUnavailable: Database unreachable or table missing
            ValueError: A filter was given for a column the table does not have
        """
        records = self._guard(self._select_rows, table, batch, program)
        logger.info("supabase_records_fetched", table=table, batch=batch, program=program, count=len(records))
        return records

    def _guard(self, func, *args):
        if self.engine is None:
            raise UpstreamUnavailable(self.name, "Database not configured")
        try:
            return get_supabase_breaker().call(func, *args)
        except CircuitBreakerError as e:
            raise UpstreamUnavailable(self.name, "Supabase circuit open", details=str(e)) from e
        except SQLAlchemyError as e:
            logger.warning("supabase_query_failed", error=str(e))
            raise UpstreamUnavailable(self.name, f"Supabase query failed: {e}") from e

    def _select_one(self) -> None:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def _select_rows(self, table: str, batch: Optional[str], program: Optional[str]) -> List[Dict[str, Any]]:
        target = Table(table, MetaData(), autoload_with=self.engine)
        stmt = select(target)

        for column_name, value in ((self.batch_column, batch), (self.program_column, program)):
            if value is None:
                continue
            if column_name not in target.c:
                raise ValueError(f"Table '{table}' has no '{column_name}' column to filter on")
            stmt = stmt.where(target.c[column_name] == value)

        with self.engine.connect() as connection:
            return [dict(row._mapping) for row in connection.execute(stmt)]
