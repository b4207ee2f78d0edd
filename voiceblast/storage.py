"""
ストレージモジュール (Storage Module)

データベース操作を抽象化するストレージレイヤーを提供します。
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Tuple

from .models import Call, CallResult, Recording


class Storage(ABC):
    """
    ストレージの抽象基底クラス

    録音、キャンペーン、個別発信結果の永続化を担当する抽象インターフェースを定義します。
    具体的な実装（SQLite、PostgreSQL等）はこのクラスを継承して実装します。
    """

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @abstractmethod
    def create_recording(self, recording: Recording) -> Recording:
        """
        録音メタデータを保存

        Args:
            recording: 保存する録音（id は None）

        Returns:
            採番済みの録音

        Raises:
            StorageError: 保存に失敗した場合
        """
        pass

    @abstractmethod
    def get_recording(self, recording_id: int) -> Optional[Recording]:
        """ID で録音を取得。見つからない場合は None"""
        pass

    @abstractmethod
    def get_recording_by_name(self, custom_name: str) -> Optional[Recording]:
        """表示名で録音を取得。見つからない場合は None"""
        pass

    @abstractmethod
    def list_recordings(self) -> List[Recording]:
        """録音一覧を作成日時の新しい順に取得"""
        pass

    @abstractmethod
    def update_recording(self, recording: Recording) -> None:
        """録音メタデータを更新"""
        pass

    @abstractmethod
    def delete_recording(self, recording_id: int) -> bool:
        """
        録音を削除

        Returns:
            削除した場合は True、存在しない場合は False
        """
        pass

    @abstractmethod
    def count_calls_for_recording(self, recording_id: int) -> int:
        """録音を参照しているキャンペーン数を取得"""
        pass

    # ------------------------------------------------------------------
    # Call
    # ------------------------------------------------------------------

    @abstractmethod
    def create_call(self, call: Call) -> Call:
        """キャンペーンを保存し、採番済みのキャンペーンを返す"""
        pass

    @abstractmethod
    def get_call(self, call_id: int) -> Optional[Call]:
        """ID でキャンペーンを取得"""
        pass

    @abstractmethod
    def get_call_by_blast_id(self, blast_id: str) -> Optional[Call]:
        """外部 API の Blast ID でキャンペーンを取得"""
        pass

    @abstractmethod
    def list_calls(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None
    ) -> Tuple[List[Call], int]:
        """
        キャンペーン一覧をページ単位で取得

        Args:
            page: ページ番号（1 始まり）
            limit: 1 ページあたりの件数
            status: ステータスフィルタ（オプション）

        Returns:
            (キャンペーンのリスト, フィルタ適用後の総件数)
        """
        pass

    @abstractmethod
    def update_call(self, call: Call) -> None:
        """キャンペーンを更新"""
        pass

    @abstractmethod
    def delete_call(self, call_id: int) -> bool:
        """キャンペーンを削除（個別発信結果も削除）"""
        pass

    @abstractmethod
    def list_due_scheduled_calls(self, now: datetime) -> List[Call]:
        """予約日時を過ぎた scheduled ステータスのキャンペーンを取得"""
        pass

    # ------------------------------------------------------------------
    # CallResult
    # ------------------------------------------------------------------

    @abstractmethod
    def save_call_result(self, result: CallResult) -> CallResult:
        """
        個別発信結果を保存

        同じキャンペーン・電話番号の結果が存在する場合は更新します。
        """
        pass

    @abstractmethod
    def list_call_results(self, call_id: int) -> List[CallResult]:
        """キャンペーンの個別発信結果を取得"""
        pass


import json
import sqlite3
from contextlib import contextmanager
from typing import Any, Generator


class StorageError(Exception):
    """
    ストレージエラー

    データベース操作中に発生したエラーを表す例外クラスです。
    """
    pass


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteStorage(Storage):
    """
    SQLite実装

    SQLiteデータベースを使用したストレージ実装です。
    ":memory:" を指定した場合は単一接続を保持します。
    """

    RECORDING_COLUMNS = (
        "id, custom_name, original_name, file_name, file_path, file_size, "
        "duration, mime_type, trim_start, trim_end, uploaded_at, created_at, updated_at"
    )

    CALL_COLUMNS = (
        "id, title, description, recording_id, phone_numbers, caller_id, retry, "
        "status, scheduled_at, started_at, completed_at, total_calls, "
        "successful_calls, failed_calls, blast_id, api_response, error_message, "
        "invalid_numbers, created_at, updated_at"
    )

    CALL_RESULT_COLUMNS = (
        "id, call_id, phone_number, status, duration, start_time, end_time, "
        "call_sid, error_message, api_response, cost, retry_count, created_at, updated_at"
    )

    def __init__(self, db_path: str = "voiceblast.db"):
        """
        SQLiteStorageを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._shared_conn: Optional[sqlite3.Connection] = None
        if db_path == ":memory:":
            self._shared_conn = sqlite3.connect(db_path, check_same_thread=False)
            self._shared_conn.row_factory = sqlite3.Row
            self._shared_conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        データベース接続のコンテキストマネージャー

        Yields:
            SQLite接続オブジェクト

        Raises:
            StorageError: 接続に失敗した場合
        """
        if self._shared_conn is not None:
            try:
                yield self._shared_conn
            except sqlite3.Error as e:
                self._shared_conn.rollback()
                raise StorageError(f"Database error: {e}") from e
            return

        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database connection error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        """
        データベーステーブルを作成

        Raises:
            StorageError: テーブル作成に失敗した場合
        """
        create_recordings_table = """
        CREATE TABLE IF NOT EXISTS recordings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            custom_name VARCHAR(255) NOT NULL UNIQUE,
            original_name VARCHAR(255),
            file_name VARCHAR(255) NOT NULL UNIQUE,
            file_path TEXT NOT NULL,
            file_size INTEGER NOT NULL,
            duration REAL,
            mime_type VARCHAR(100) NOT NULL,
            trim_start REAL NOT NULL DEFAULT 0,
            trim_end REAL,
            uploaded_at TIMESTAMP NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """

        create_calls_table = """
        CREATE TABLE IF NOT EXISTS calls (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title VARCHAR(255) NOT NULL,
            description TEXT,
            recording_id INTEGER NOT NULL REFERENCES recordings(id),
            phone_numbers TEXT NOT NULL,
            caller_id VARCHAR(20),
            retry INTEGER NOT NULL DEFAULT 3,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            scheduled_at TIMESTAMP,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            total_calls INTEGER NOT NULL DEFAULT 0,
            successful_calls INTEGER NOT NULL DEFAULT 0,
            failed_calls INTEGER NOT NULL DEFAULT 0,
            blast_id VARCHAR(100),
            api_response TEXT,
            error_message TEXT,
            invalid_numbers TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """

        create_call_results_table = """
        CREATE TABLE IF NOT EXISTS call_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            call_id INTEGER NOT NULL REFERENCES calls(id) ON DELETE CASCADE,
            phone_number VARCHAR(20) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            duration INTEGER,
            start_time TIMESTAMP,
            end_time TIMESTAMP,
            call_sid VARCHAR(100),
            error_message TEXT,
            api_response TEXT,
            cost REAL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """

        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_recordings_created_at ON recordings(created_at)",
            "CREATE INDEX IF NOT EXISTS idx_calls_status ON calls(status)",
            "CREATE INDEX IF NOT EXISTS idx_calls_blast_id ON calls(blast_id)",
            "CREATE INDEX IF NOT EXISTS idx_calls_recording_id ON calls(recording_id)",
            "CREATE INDEX IF NOT EXISTS idx_call_results_call_id ON call_results(call_id)",
        ]

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(create_recordings_table)
                cursor.execute(create_calls_table)
                cursor.execute(create_call_results_table)
                for statement in indexes:
                    cursor.execute(statement)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create tables: {e}") from e

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def create_recording(self, recording: Recording) -> Recording:
        sql = """
        INSERT INTO recordings (
            custom_name, original_name, file_name, file_path, file_size,
            duration, mime_type, trim_start, trim_end, uploaded_at,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    recording.custom_name,
                    recording.original_name,
                    recording.file_name,
                    recording.file_path,
                    recording.file_size,
                    recording.duration,
                    recording.mime_type,
                    recording.trim_start,
                    recording.trim_end,
                    _iso(recording.uploaded_at),
                    _iso(recording.created_at),
                    _iso(recording.updated_at),
                ))
                conn.commit()
                return replace(recording, id=cursor.lastrowid)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save recording: {e}") from e

    def get_recording(self, recording_id: int) -> Optional[Recording]:
        sql = f"SELECT {self.RECORDING_COLUMNS} FROM recordings WHERE id = ?"
        row = self._fetch_one(sql, (recording_id,), "Failed to get recording")
        return self._row_to_recording(row) if row else None

    def get_recording_by_name(self, custom_name: str) -> Optional[Recording]:
        sql = f"SELECT {self.RECORDING_COLUMNS} FROM recordings WHERE custom_name = ?"
        row = self._fetch_one(sql, (custom_name,), "Failed to get recording")
        return self._row_to_recording(row) if row else None

    def list_recordings(self) -> List[Recording]:
        sql = f"SELECT {self.RECORDING_COLUMNS} FROM recordings ORDER BY created_at DESC, id DESC"
        rows = self._fetch_all(sql, (), "Failed to list recordings")
        return [self._row_to_recording(row) for row in rows]

    def update_recording(self, recording: Recording) -> None:
        sql = """
        UPDATE recordings
        SET custom_name = ?, original_name = ?, file_name = ?, file_path = ?,
            file_size = ?, duration = ?, mime_type = ?, trim_start = ?,
            trim_end = ?, updated_at = ?
        WHERE id = ?
        """
        self._execute(sql, (
            recording.custom_name,
            recording.original_name,
            recording.file_name,
            recording.file_path,
            recording.file_size,
            recording.duration,
            recording.mime_type,
            recording.trim_start,
            recording.trim_end,
            _iso(recording.updated_at),
            recording.id,
        ), "Failed to update recording")

    def delete_recording(self, recording_id: int) -> bool:
        return self._execute(
            "DELETE FROM recordings WHERE id = ?",
            (recording_id,),
            "Failed to delete recording"
        ) > 0

    def count_calls_for_recording(self, recording_id: int) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM calls WHERE recording_id = ?",
            (recording_id,),
            "Failed to count calls"
        )
        return row["n"] if row else 0

    # ------------------------------------------------------------------
    # Call
    # ------------------------------------------------------------------

    def create_call(self, call: Call) -> Call:
        sql = """
        INSERT INTO calls (
            title, description, recording_id, phone_numbers, caller_id, retry,
            status, scheduled_at, started_at, completed_at, total_calls,
            successful_calls, failed_calls, blast_id, api_response,
            error_message, invalid_numbers, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    call.title,
                    call.description,
                    call.recording_id,
                    _dumps(call.phone_numbers),
                    call.caller_id,
                    call.retry,
                    call.status,
                    _iso(call.scheduled_at),
                    _iso(call.started_at),
                    _iso(call.completed_at),
                    call.total_calls,
                    call.successful_calls,
                    call.failed_calls,
                    call.blast_id,
                    _dumps(call.api_response),
                    call.error_message,
                    _dumps(call.invalid_numbers),
                    _iso(call.created_at),
                    _iso(call.updated_at),
                ))
                conn.commit()
                return replace(call, id=cursor.lastrowid)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save call: {e}") from e

    def get_call(self, call_id: int) -> Optional[Call]:
        sql = f"SELECT {self.CALL_COLUMNS} FROM calls WHERE id = ?"
        row = self._fetch_one(sql, (call_id,), "Failed to get call")
        return self._row_to_call(row) if row else None

    def get_call_by_blast_id(self, blast_id: str) -> Optional[Call]:
        sql = f"SELECT {self.CALL_COLUMNS} FROM calls WHERE blast_id = ? ORDER BY id DESC"
        row = self._fetch_one(sql, (str(blast_id),), "Failed to get call")
        return self._row_to_call(row) if row else None

    def list_calls(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None
    ) -> Tuple[List[Call], int]:
        where = ""
        params: List[Any] = []
        if status:
            where = " WHERE status = ?"
            params.append(status)

        count_row = self._fetch_one(
            f"SELECT COUNT(*) AS n FROM calls{where}",
            tuple(params),
            "Failed to count calls"
        )
        total = count_row["n"] if count_row else 0

        offset = (page - 1) * limit
        sql = (
            f"SELECT {self.CALL_COLUMNS} FROM calls{where} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        )
        rows = self._fetch_all(sql, tuple(params + [limit, offset]), "Failed to list calls")
        return [self._row_to_call(row) for row in rows], total

    def update_call(self, call: Call) -> None:
        sql = """
        UPDATE calls
        SET title = ?, description = ?, recording_id = ?, phone_numbers = ?,
            caller_id = ?, retry = ?, status = ?, scheduled_at = ?,
            started_at = ?, completed_at = ?, total_calls = ?,
            successful_calls = ?, failed_calls = ?, blast_id = ?,
            api_response = ?, error_message = ?, invalid_numbers = ?,
            updated_at = ?
        WHERE id = ?
        """
        self._execute(sql, (
            call.title,
            call.description,
            call.recording_id,
            _dumps(call.phone_numbers),
            call.caller_id,
            call.retry,
            call.status,
            _iso(call.scheduled_at),
            _iso(call.started_at),
            _iso(call.completed_at),
            call.total_calls,
            call.successful_calls,
            call.failed_calls,
            call.blast_id,
            _dumps(call.api_response),
            call.error_message,
            _dumps(call.invalid_numbers),
            _iso(call.updated_at),
            call.id,
        ), "Failed to update call")

    def delete_call(self, call_id: int) -> bool:
        return self._execute(
            "DELETE FROM calls WHERE id = ?",
            (call_id,),
            "Failed to delete call"
        ) > 0

    def list_due_scheduled_calls(self, now: datetime) -> List[Call]:
        sql = (
            f"SELECT {self.CALL_COLUMNS} FROM calls "
            "WHERE status = 'scheduled' AND scheduled_at IS NOT NULL AND scheduled_at <= ? "
            "ORDER BY scheduled_at ASC"
        )
        rows = self._fetch_all(sql, (_iso(now),), "Failed to list scheduled calls")
        return [self._row_to_call(row) for row in rows]

    # ------------------------------------------------------------------
    # CallResult
    # ------------------------------------------------------------------

    def save_call_result(self, result: CallResult) -> CallResult:
        find_sql = "SELECT id, created_at FROM call_results WHERE call_id = ? AND phone_number = ?"
        insert_sql = """
        INSERT INTO call_results (
            call_id, phone_number, status, duration, start_time, end_time,
            call_sid, error_message, api_response, cost, retry_count,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        update_sql = """
        UPDATE call_results
        SET status = ?, duration = ?, start_time = ?, end_time = ?, call_sid = ?,
            error_message = ?, api_response = ?, cost = ?, retry_count = ?,
            updated_at = ?
        WHERE id = ?
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(find_sql, (result.call_id, result.phone_number))
                existing = cursor.fetchone()
                if existing is None:
                    cursor.execute(insert_sql, (
                        result.call_id,
                        result.phone_number,
                        result.status,
                        result.duration,
                        _iso(result.start_time),
                        _iso(result.end_time),
                        result.call_sid,
                        result.error_message,
                        _dumps(result.api_response),
                        result.cost,
                        result.retry_count,
                        _iso(result.created_at),
                        _iso(result.updated_at),
                    ))
                    saved = replace(result, id=cursor.lastrowid)
                else:
                    cursor.execute(update_sql, (
                        result.status,
                        result.duration,
                        _iso(result.start_time),
                        _iso(result.end_time),
                        result.call_sid,
                        result.error_message,
                        _dumps(result.api_response),
                        result.cost,
                        result.retry_count,
                        _iso(result.updated_at),
                        existing["id"],
                    ))
                    saved = replace(
                        result,
                        id=existing["id"],
                        created_at=_dt(existing["created_at"])
                    )
                conn.commit()
                return saved
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save call result: {e}") from e

    def list_call_results(self, call_id: int) -> List[CallResult]:
        sql = f"SELECT {self.CALL_RESULT_COLUMNS} FROM call_results WHERE call_id = ? ORDER BY id ASC"
        rows = self._fetch_all(sql, (call_id,), "Failed to list call results")
        return [self._row_to_call_result(row) for row in rows]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, sql: str, params: tuple, error_message: str) -> Optional[sqlite3.Row]:
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"{error_message}: {e}") from e

    def _fetch_all(self, sql: str, params: tuple, error_message: str) -> List[sqlite3.Row]:
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"{error_message}: {e}") from e

    def _execute(self, sql: str, params: tuple, error_message: str) -> int:
        """更新系 SQL を実行し、影響を受けた行数を返す"""
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"{error_message}: {e}") from e

    def _row_to_recording(self, row: sqlite3.Row) -> Recording:
        """SQLite行をRecordingオブジェクトに変換"""
        return Recording(
            id=row["id"],
            custom_name=row["custom_name"],
            original_name=row["original_name"],
            file_name=row["file_name"],
            file_path=row["file_path"],
            file_size=row["file_size"],
            duration=row["duration"],
            mime_type=row["mime_type"],
            trim_start=row["trim_start"] or 0.0,
            trim_end=row["trim_end"],
            uploaded_at=_dt(row["uploaded_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _row_to_call(self, row: sqlite3.Row) -> Call:
        """SQLite行をCallオブジェクトに変換"""
        return Call(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            recording_id=row["recording_id"],
            phone_numbers=_loads(row["phone_numbers"]) or [],
            caller_id=row["caller_id"],
            retry=row["retry"],
            status=row["status"],
            scheduled_at=_dt(row["scheduled_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            total_calls=row["total_calls"],
            successful_calls=row["successful_calls"],
            failed_calls=row["failed_calls"],
            blast_id=row["blast_id"],
            api_response=_loads(row["api_response"]),
            error_message=row["error_message"],
            invalid_numbers=_loads(row["invalid_numbers"]) or [],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _row_to_call_result(self, row: sqlite3.Row) -> CallResult:
        """SQLite行をCallResultオブジェクトに変換"""
        return CallResult(
            id=row["id"],
            call_id=row["call_id"],
            phone_number=row["phone_number"],
            status=row["status"],
            duration=row["duration"],
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            call_sid=row["call_sid"],
            error_message=row["error_message"],
            api_response=_loads(row["api_response"]),
            cost=row["cost"],
            retry_count=row["retry_count"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )
