"""Persistence for session grading state, line ratings and the grading-job ledger."""

import os
import json
import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from google.cloud import bigquery
from google.cloud.exceptions import NotFound
from rich.console import Console

from .errors import SessionNotFoundError
from .line_rating import apply_batch_result
from .schemas import (
    GradingJobRecord, LineRating, LineRatingJob, LineRatingsStatus, SessionGradingState, Transcript
)

load_dotenv()

logger = logging.getLogger(__name__)
console = Console()

Mutation = Callable[[SessionGradingState], None]


class SessionStore(ABC):
    """
    Session state storage

    Every write goes through update() or apply_line_ratings(), both of which
    are atomic read-modify-writes per session, so concurrent batch
    completions never lose each other's ratings.
    """

    async def create(self, session_id: str, transcript: Transcript,
                     duration_seconds: Optional[float] = None) -> SessionGradingState:
        """Start a fresh grading record, superseding any earlier run"""
        state = SessionGradingState(session_id=session_id, run_id=uuid.uuid4().hex, transcript=transcript,
                                    duration_seconds=duration_seconds)
        await self.save(state)
        return state

    @abstractmethod
    async def get(self, session_id: str) -> SessionGradingState:
        """Raises SessionNotFoundError"""

    @abstractmethod
    async def save(self, state: SessionGradingState) -> None:
        ...

    @abstractmethod
    async def update(self, session_id: str, mutate: Mutation) -> SessionGradingState:
        ...

    @abstractmethod
    async def apply_line_ratings(self, session_id: str, job: LineRatingJob,
                                 ratings: List[LineRating]) -> SessionGradingState:
        ...

    async def record_failed_batch(self, session_id: str, batch_index: int, error: str,
                                  run_id: Optional[str] = None) -> SessionGradingState:
        def mark(state: SessionGradingState) -> None:
            if run_id != state.run_id:
                return
            if batch_index not in state.line_ratings_failed_batches:
                state.line_ratings_failed_batches = sorted(state.line_ratings_failed_batches + [batch_index])
            state.analytics.setdefault("line_rating_errors", {})[str(batch_index)] = error

        return await self.update(session_id, mark)

    @abstractmethod
    async def save_job(self, record: GradingJobRecord) -> None:
        ...

    @abstractmethod
    async def list_jobs(self, session_id: Optional[str] = None, limit: int = 50) -> List[GradingJobRecord]:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 20) -> List[SessionGradingState]:
        ...

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """Dict-backed store; callers always receive copies"""

    def __init__(self):
        self._sessions: Dict[str, SessionGradingState] = {}
        self._jobs: Dict[Tuple[str, int], GradingJobRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, session_id: str) -> SessionGradingState:
        state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state.model_copy(deep=True)

    async def save(self, state: SessionGradingState) -> None:
        async with self._locks[state.session_id]:
            state.updated_at = datetime.now()
            self._sessions[state.session_id] = state.model_copy(deep=True)

    async def update(self, session_id: str, mutate: Mutation) -> SessionGradingState:
        async with self._locks[session_id]:
            state = await self.get(session_id)
            mutate(state)
            state.updated_at = datetime.now()
            self._sessions[session_id] = state.model_copy(deep=True)
            return state

    async def apply_line_ratings(self, session_id: str, job: LineRatingJob,
                                 ratings: List[LineRating]) -> SessionGradingState:
        return await self.update(session_id, lambda state: apply_batch_result(state, job, ratings))

    async def save_job(self, record: GradingJobRecord) -> None:
        self._jobs[(record.session_id, record.batch_index)] = record.model_copy()

    async def list_jobs(self, session_id: Optional[str] = None, limit: int = 50) -> List[GradingJobRecord]:
        jobs = [j for j in self._jobs.values() if session_id is None or j.session_id == session_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy() for j in jobs[:limit]]

    async def list_recent(self, limit: int = 20) -> List[SessionGradingState]:
        states = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy(deep=True) for s in states[:limit]]


class BigQuerySessionStore(SessionStore):
    """
    BigQuery-backed store

    Session state is one row per session (JSON blob plus denormalized
    columns, upserted with MERGE). Line ratings are append-only rows reduced
    at read time, latest rating per line and distinct batch indexes, scoped to
    the session's current run_id, so workers in different processes never
    overwrite each other and a superseded run's rows are never read back.
    """

    def __init__(self, project_id: Optional[str] = None, dataset_name: Optional[str] = None,
                 client: Optional[bigquery.Client] = None):
        self.project_id = project_id or os.getenv("BQ_PROJECT_ID")
        self.dataset_name = dataset_name or os.getenv("BQ_DATASET", "session_grading")
        self.sessions_table = os.getenv("BQ_SESSIONS_TABLE", "sessions")
        self.line_ratings_table = os.getenv("BQ_LINE_RATINGS_TABLE", "line_ratings")
        self.jobs_table = os.getenv("BQ_JOBS_TABLE", "grading_jobs")

        self.client = client or bigquery.Client(project=self.project_id)
        self.project_id = self.project_id or self.client.project
        # BigQuery has no row locks; serialize read-modify-write within this process
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tables_ready = False

        console.print(f"[green]Initialized BigQuery session store for project: {self.project_id}[/green]")

    def _table_id(self, table: str) -> str:
        return f"{self.project_id}.{self.dataset_name}.{table}"

    def create_dataset_if_not_exists(self) -> None:
        dataset_id = f"{self.project_id}.{self.dataset_name}"
        try:
            self.client.get_dataset(dataset_id)
        except NotFound:
            dataset = bigquery.Dataset(dataset_id)
            dataset.location = "US"
            dataset.description = "Sales session grading state"
            self.client.create_dataset(dataset, timeout=30)
            console.print(f"[green]Created dataset {self.dataset_name}[/green]")

    def _create_table_if_not_exists(self, table: str, schema: List[bigquery.SchemaField], description: str) -> None:
        table_id = self._table_id(table)
        try:
            self.client.get_table(table_id)
        except NotFound:
            bq_table = bigquery.Table(table_id, schema=schema)
            bq_table.description = description
            self.client.create_table(bq_table, timeout=30)
            console.print(f"[green]Created table {table} with {len(schema)} columns[/green]")

    def create_tables_if_not_exist(self) -> None:
        if self._tables_ready:
            return
        self.create_dataset_if_not_exists()
        self._create_table_if_not_exists(self.sessions_table, [
            bigquery.SchemaField("session_id", "STRING", mode="REQUIRED"),
            bigquery.SchemaField("grading_status", "STRING", mode="REQUIRED"),
            bigquery.SchemaField("overall_score", "INTEGER", mode="NULLABLE"),
            bigquery.SchemaField("sale_closed", "BOOLEAN", mode="NULLABLE"),
            bigquery.SchemaField("line_ratings_status", "STRING", mode="NULLABLE"),
            bigquery.SchemaField("state", "JSON", mode="REQUIRED", description="SessionGradingState as JSON"),
            bigquery.SchemaField("created_at", "TIMESTAMP", mode="REQUIRED"),
            bigquery.SchemaField("updated_at", "TIMESTAMP", mode="REQUIRED"),
        ], "Session grading state, one row per session")
        self._create_table_if_not_exists(self.line_ratings_table, [
            bigquery.SchemaField("session_id", "STRING", mode="REQUIRED"),
            bigquery.SchemaField("run_id", "STRING", mode="NULLABLE"),
            bigquery.SchemaField("batch_index", "INTEGER", mode="REQUIRED"),
            bigquery.SchemaField("total_batches", "INTEGER", mode="REQUIRED"),
            bigquery.SchemaField("line_index", "INTEGER", mode="REQUIRED"),
            bigquery.SchemaField("rating", "JSON", mode="REQUIRED", description="LineRating as JSON"),
            bigquery.SchemaField("rated_at", "TIMESTAMP", mode="REQUIRED"),
        ], "Append-only line ratings; latest row per line wins")
        self._create_table_if_not_exists(self.jobs_table, [
            bigquery.SchemaField("session_id", "STRING", mode="REQUIRED"),
            bigquery.SchemaField("batch_index", "INTEGER", mode="REQUIRED"),
            bigquery.SchemaField("total_batches", "INTEGER", mode="REQUIRED"),
            bigquery.SchemaField("status", "STRING", mode="REQUIRED"),
            bigquery.SchemaField("attempts", "INTEGER", mode="REQUIRED"),
            bigquery.SchemaField("created_at", "TIMESTAMP", mode="REQUIRED"),
            bigquery.SchemaField("started_at", "TIMESTAMP", mode="NULLABLE"),
            bigquery.SchemaField("completed_at", "TIMESTAMP", mode="NULLABLE"),
            bigquery.SchemaField("error", "STRING", mode="NULLABLE"),
        ], "Line-rating job ledger")
        self._tables_ready = True

    def _query(self, query: str, params: Optional[List] = None) -> List[Dict]:
        job_config = bigquery.QueryJobConfig(query_parameters=params or [])
        return [dict(row) for row in self.client.query(query, job_config=job_config).result()]

    def _load_state(self, session_id: str) -> SessionGradingState:
        self.create_tables_if_not_exist()
        param = [bigquery.ScalarQueryParameter("session_id", "STRING", session_id)]
        rows = self._query(f"""
        SELECT TO_JSON_STRING(state) AS state
        FROM `{self._table_id(self.sessions_table)}`
        WHERE session_id = @session_id
        LIMIT 1
        """, param)
        if not rows:
            raise SessionNotFoundError(session_id)
        state = SessionGradingState.model_validate(json.loads(rows[0]["state"]))

        ratings = self._query(f"""
        SELECT batch_index, TO_JSON_STRING(rating) AS rating
        FROM (
            SELECT *,
                ROW_NUMBER() OVER (
                    PARTITION BY session_id, line_index
                    ORDER BY rated_at DESC
                ) AS row_num
            FROM `{self._table_id(self.line_ratings_table)}`
            WHERE session_id = @session_id AND run_id = @run_id
        )
        WHERE row_num = 1
        """, param + [bigquery.ScalarQueryParameter("run_id", "STRING", state.run_id)])
        batches = self._query(f"""
        SELECT DISTINCT batch_index
        FROM `{self._table_id(self.line_ratings_table)}`
        WHERE session_id = @session_id AND run_id = @run_id
        """, param + [bigquery.ScalarQueryParameter("run_id", "STRING", state.run_id)])

        if ratings:
            state.line_ratings = sorted(
                (LineRating.model_validate(json.loads(row["rating"])) for row in ratings),
                key=lambda r: r.index
            )
            state.line_ratings_completed_batches = sorted(row["batch_index"] for row in batches)
            state.line_ratings_failed_batches = [
                b for b in state.line_ratings_failed_batches if b not in state.line_ratings_completed_batches
            ]
            state.line_ratings_status = (
                LineRatingsStatus.COMPLETED if state.line_ratings_complete else LineRatingsStatus.PROCESSING
            )
        return state

    def _merge_state(self, state: SessionGradingState) -> None:
        self.create_tables_if_not_exist()
        state.updated_at = datetime.now()
        payload = state.model_dump(mode="json")
        # Ratings live in their own append-only table
        payload["line_ratings"] = []
        params = [
            bigquery.ScalarQueryParameter("session_id", "STRING", state.session_id),
            bigquery.ScalarQueryParameter("grading_status", "STRING", state.status.value),
            bigquery.ScalarQueryParameter("overall_score", "INT64", state.overall_score),
            bigquery.ScalarQueryParameter("sale_closed", "BOOL", state.sale_closed),
            bigquery.ScalarQueryParameter(
                "line_ratings_status", "STRING",
                state.line_ratings_status.value if state.line_ratings_status else None
            ),
            bigquery.ScalarQueryParameter("state", "STRING", json.dumps(payload)),
            bigquery.ScalarQueryParameter("created_at", "TIMESTAMP", state.created_at),
            bigquery.ScalarQueryParameter("updated_at", "TIMESTAMP", state.updated_at),
        ]
        self._query(f"""
        MERGE `{self._table_id(self.sessions_table)}` AS target
        USING (SELECT
            @session_id AS session_id,
            @grading_status AS grading_status,
            @overall_score AS overall_score,
            @sale_closed AS sale_closed,
            @line_ratings_status AS line_ratings_status,
            PARSE_JSON(@state) AS state,
            @created_at AS created_at,
            @updated_at AS updated_at
        ) AS source
        ON target.session_id = source.session_id
        WHEN MATCHED THEN
            UPDATE SET
                grading_status = source.grading_status,
                overall_score = source.overall_score,
                sale_closed = source.sale_closed,
                line_ratings_status = source.line_ratings_status,
                state = source.state,
                created_at = source.created_at,
                updated_at = source.updated_at
        WHEN NOT MATCHED THEN
            INSERT ROW
        """, params)

    def _append_ratings(self, job: LineRatingJob, ratings: List[LineRating]) -> None:
        self.create_tables_if_not_exist()
        rated_at = datetime.now().isoformat()
        rows = [{
            "session_id": job.session_id,
            "run_id": job.run_id,
            "batch_index": job.batch_index,
            "total_batches": job.total_batches,
            "line_index": rating.index,
            "rating": rating.model_dump_json(),
            "rated_at": rated_at,
        } for rating in ratings]
        # partition_batches never builds an empty batch
        if not rows:
            return
        errors = self.client.insert_rows_json(self._table_id(self.line_ratings_table), rows)
        if errors:
            raise RuntimeError(f"Line rating insert failed: {errors}")

    def _merge_job(self, record: GradingJobRecord) -> None:
        self.create_tables_if_not_exist()
        params = [
            bigquery.ScalarQueryParameter("session_id", "STRING", record.session_id),
            bigquery.ScalarQueryParameter("batch_index", "INT64", record.batch_index),
            bigquery.ScalarQueryParameter("total_batches", "INT64", record.total_batches),
            bigquery.ScalarQueryParameter("status", "STRING", record.status),
            bigquery.ScalarQueryParameter("attempts", "INT64", record.attempts),
            bigquery.ScalarQueryParameter("created_at", "TIMESTAMP", record.created_at),
            bigquery.ScalarQueryParameter("started_at", "TIMESTAMP", record.started_at),
            bigquery.ScalarQueryParameter("completed_at", "TIMESTAMP", record.completed_at),
            bigquery.ScalarQueryParameter("error", "STRING", record.error),
        ]
        self._query(f"""
        MERGE `{self._table_id(self.jobs_table)}` AS target
        USING (SELECT
            @session_id AS session_id, @batch_index AS batch_index, @total_batches AS total_batches,
            @status AS status, @attempts AS attempts, @created_at AS created_at,
            @started_at AS started_at, @completed_at AS completed_at, @error AS error
        ) AS source
        ON target.session_id = source.session_id AND target.batch_index = source.batch_index
        WHEN MATCHED THEN
            UPDATE SET
                status = source.status,
                attempts = source.attempts,
                started_at = source.started_at,
                completed_at = source.completed_at,
                error = source.error
        WHEN NOT MATCHED THEN
            INSERT ROW
        """, params)

    async def get(self, session_id: str) -> SessionGradingState:
        return await asyncio.to_thread(self._load_state, session_id)

    async def save(self, state: SessionGradingState) -> None:
        async with self._locks[state.session_id]:
            await asyncio.to_thread(self._merge_state, state)

    async def update(self, session_id: str, mutate: Mutation) -> SessionGradingState:
        async with self._locks[session_id]:
            state = await self.get(session_id)
            mutate(state)
            await asyncio.to_thread(self._merge_state, state)
            return state

    async def apply_line_ratings(self, session_id: str, job: LineRatingJob,
                                 ratings: List[LineRating]) -> SessionGradingState:
        await asyncio.to_thread(self._append_ratings, job, ratings)
        return await self.get(session_id)

    async def save_job(self, record: GradingJobRecord) -> None:
        await asyncio.to_thread(self._merge_job, record)

    async def list_jobs(self, session_id: Optional[str] = None, limit: int = 50) -> List[GradingJobRecord]:
        def query() -> List[Dict]:
            self.create_tables_if_not_exist()
            where = "WHERE session_id = @session_id" if session_id else ""
            params = [bigquery.ScalarQueryParameter("session_id", "STRING", session_id)] if session_id else []
            params.append(bigquery.ScalarQueryParameter("limit", "INT64", limit))
            return self._query(f"""
            SELECT * FROM `{self._table_id(self.jobs_table)}`
            {where}
            ORDER BY created_at DESC
            LIMIT @limit
            """, params)

        rows = await asyncio.to_thread(query)
        return [GradingJobRecord.model_validate(row) for row in rows]

    async def list_recent(self, limit: int = 20) -> List[SessionGradingState]:
        def query() -> List[Dict]:
            self.create_tables_if_not_exist()
            return self._query(f"""
            SELECT TO_JSON_STRING(state) AS state
            FROM `{self._table_id(self.sessions_table)}`
            ORDER BY updated_at DESC
            LIMIT @limit
            """, [bigquery.ScalarQueryParameter("limit", "INT64", limit)])

        rows = await asyncio.to_thread(query)
        return [SessionGradingState.model_validate(json.loads(row["state"])) for row in rows]

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)


def create_session_store(backend: Optional[str] = None) -> SessionStore:
    """Build the store selected by SESSION_STORE_BACKEND (memory, bigquery)"""
    backend = (backend or os.getenv("SESSION_STORE_BACKEND", "memory")).lower()
    if backend == "bigquery":
        return BigQuerySessionStore()
    if backend != "memory":
        logger.warning(f"Unknown session store backend '{backend}', using in-memory store")
    return InMemorySessionStore()
