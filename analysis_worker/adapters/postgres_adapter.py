"""
Postgres adapter implementation for the record store.

Records live in ``analysis_records``, tickets in ``job_tickets`` keyed by
(video_id, kind) so per-kind updates never contend with each other.
Status transitions are guarded with ``WHERE status = %s``.
"""

import logging
from typing import Optional, Dict, Any, List

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .base import RecordStore
from ..errors import NotFound, StoreConflict
from ..logging_setup import log_exception
from ..models import AnalysisRecord, JobTicket, MUTABLE_RECORD_FIELDS, TICKET_PENDING

logger = logging.getLogger("analysis_worker")


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS analysis_records (
        video_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        completed_at TEXT,
        error TEXT,
        report TEXT,
        video_key TEXT,
        bucket TEXT,
        expected_kinds JSONB NOT NULL DEFAULT '[]'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_tickets (
        video_id TEXT NOT NULL REFERENCES analysis_records (video_id),
        kind TEXT NOT NULL,
        job_id TEXT,
        status TEXT NOT NULL,
        payload JSONB,
        message TEXT,
        updated_at TEXT,
        PRIMARY KEY (video_id, kind)
    )
    """,
    "CREATE INDEX IF NOT EXISTS analysis_records_status_idx ON analysis_records (status, created_at)",
)

RECORD_COLUMNS = "video_id, status, created_at, completed_at, error, report, video_key, bucket, expected_kinds"


class PostgresRecordStore(RecordStore):
    """Postgres implementation of the record store"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = ConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "analysis_worker"
                }
            )
            logger.info("Postgres record store connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres record store: {e}")
            raise

    def _bootstrap_schema(self):
        """Create tables if they do not exist yet"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
                conn.commit()
                logger.info("Postgres record store schema validated")

    def _row_to_record(self, row: Dict[str, Any], ticket_rows: List[Dict[str, Any]]) -> AnalysisRecord:
        tickets = {
            ticket['kind']: JobTicket(
                kind=ticket['kind'],
                job_id=ticket['job_id'],
                status=ticket['status'],
                payload=ticket['payload'],
                message=ticket['message'],
                updated_at=ticket['updated_at'],
            )
            for ticket in ticket_rows
        }
        return AnalysisRecord(
            video_id=row['video_id'],
            status=row['status'],
            created_at=row['created_at'],
            completed_at=row['completed_at'],
            error=row['error'],
            report=row['report'],
            video_key=row['video_key'],
            bucket=row['bucket'],
            expected_kinds=list(row['expected_kinds'] or []),
            tickets=tickets,
        )

    def _fetch_tickets(self, cur, video_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {video_id: [] for video_id in video_ids}
        if not video_ids:
            return grouped
        cur.execute("""
            SELECT video_id, kind, job_id, status, payload, message, updated_at
            FROM job_tickets WHERE video_id = ANY(%s)
            ORDER BY video_id, kind
        """, (video_ids,))
        for ticket in cur.fetchall():
            grouped[ticket['video_id']].append(ticket)
        return grouped

    def create(self, record: AnalysisRecord) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    INSERT INTO analysis_records ({RECORD_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (video_id) DO NOTHING
                """, (
                    record.video_id, record.status, record.created_at, record.completed_at,
                    record.error, record.report, record.video_key, record.bucket,
                    Jsonb(list(record.expected_kinds)),
                ))
                if cur.rowcount == 0:
                    conn.rollback()
                    raise StoreConflict(record.video_id)
                conn.commit()
                logger.info(f"Created analysis record {record.video_id}")

        for ticket in record.tickets.values():
            self.save_ticket(record.video_id, ticket)

    def get(self, video_id: str) -> Optional[AnalysisRecord]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"SELECT {RECORD_COLUMNS} FROM analysis_records WHERE video_id = %s", (video_id,))
                row = cur.fetchone()
                if not row:
                    return None
                tickets = self._fetch_tickets(cur, [video_id])
                return self._row_to_record(row, tickets[video_id])

    def conditional_update(self, video_id: str, expected_status: str, changes: Dict[str, Any]) -> AnalysisRecord:
        unknown = set(changes) - MUTABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        # Column names come from the MUTABLE_RECORD_FIELDS whitelist
        assignments = ", ".join(f"{field} = %s" for field in changes)
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    UPDATE analysis_records SET {assignments}
                    WHERE video_id = %s AND status = %s
                    RETURNING {RECORD_COLUMNS}
                """, (*changes.values(), video_id, expected_status))
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    cur.execute("SELECT 1 FROM analysis_records WHERE video_id = %s", (video_id,))
                    if cur.fetchone() is None:
                        raise NotFound(video_id)
                    raise StoreConflict(video_id, expected_status)
                tickets = self._fetch_tickets(cur, [video_id])
                conn.commit()
                return self._row_to_record(row, tickets[video_id])

    def save_ticket(self, video_id: str, ticket: JobTicket) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO job_tickets (video_id, kind, job_id, status, payload, message, updated_at)
                    SELECT %s, %s, %s, %s, %s, %s, %s
                    WHERE EXISTS (SELECT 1 FROM analysis_records WHERE video_id = %s)
                    ON CONFLICT (video_id, kind) DO UPDATE SET
                        job_id = EXCLUDED.job_id,
                        status = EXCLUDED.status,
                        payload = EXCLUDED.payload,
                        message = EXCLUDED.message,
                        updated_at = EXCLUDED.updated_at
                    WHERE job_tickets.status = %s
                       OR (job_tickets.status = EXCLUDED.status AND job_tickets.payload IS NULL)
                """, (
                    video_id, ticket.kind, ticket.job_id, ticket.status,
                    Jsonb(ticket.payload) if ticket.payload is not None else None,
                    ticket.message, ticket.updated_at, video_id, TICKET_PENDING,
                ))
                written = cur.rowcount > 0
                conn.commit()
                return written

    def list_records(self, status: Optional[str] = None) -> List[AnalysisRecord]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                if status:
                    cur.execute(f"SELECT {RECORD_COLUMNS} FROM analysis_records WHERE status = %s", (status,))
                else:
                    cur.execute(f"SELECT {RECORD_COLUMNS} FROM analysis_records")
                rows = cur.fetchall()
                tickets = self._fetch_tickets(cur, [row['video_id'] for row in rows])
                return [self._row_to_record(row, tickets[row['video_id']]) for row in rows]

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres record store connection pool closed")
