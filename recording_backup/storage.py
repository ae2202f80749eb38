"""
ストレージモジュール (Storage Module)

バックアップジョブが参照するユーザーディレクトリと、
XDR レコードのアーカイブパスを記録するレコードストアを提供します。
"""

import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, List, Optional, Set

from .models import CallRecord


class StorageError(Exception):
    """
    ストレージエラー

    データベース操作中に発生したエラーを表す例外クラスです。
    """
    pass


class AcknowledgeError(StorageError):
    """
    アーカイブパスの書き込みエラー

    アップロード成功後にレコードへアーカイブパスを記録できなかったことを表します。
    アーカイブ上にはオブジェクトが存在するため、別途照合が必要です。
    """
    pass


class CustomerDirectory(ABC):
    """
    ユーザーディレクトリの抽象基底クラス

    有効なユーザーに紐づく顧客 ID (i_customer) の一覧を提供します。
    """

    @abstractmethod
    def list_customer_ids(self) -> List[str]:
        """
        有効なユーザーの顧客 ID 一覧を取得

        空の i_customer を持つユーザーは含まれません。重複の除去は行いません。
        順序は同じデータに対して常に同じです。

        Returns:
            顧客 ID のリスト

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass


class StaticCustomerDirectory(CustomerDirectory):
    """
    設定で指定された顧客 ID の一覧

    CUSTOMER_IDS 環境変数で指定された順序のまま返します。
    空の顧客 ID は除外されます。
    """

    def __init__(self, customer_ids: List[str]):
        self.customer_ids = [c for c in customer_ids if c]

    def list_customer_ids(self) -> List[str]:
        return list(self.customer_ids)


class RecordStore(ABC):
    """
    XDR レコードストアの抽象基底クラス

    アーカイブパスが記録されたレコードはエクスポート済みとして扱われます。
    """

    @abstractmethod
    def save_record(self, customer_id: str, record: CallRecord) -> None:
        """
        XDR レコードを登録（既に存在する場合は何もしない）

        Raises:
            StorageError: 保存に失敗した場合
        """
        pass

    @abstractmethod
    def get_archive_path(self, record_id: int) -> Optional[str]:
        """
        XDR のアーカイブパスを取得

        Returns:
            アーカイブパス、未エクスポートまたは未登録の場合は None

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass

    @abstractmethod
    def acknowledge(self, record_id: int, archive_path: str) -> None:
        """
        XDR にアーカイブパスを記録

        Args:
            record_id: XDR 識別子 (i_xdr)
            archive_path: オブジェクトストレージ上のキー

        Raises:
            AcknowledgeError: 記録に失敗した場合
        """
        pass

    @abstractmethod
    def list_archive_paths(self, prefix: str) -> Set[str]:
        """
        プレフィックスに一致する記録済みアーカイブパスを取得

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass


class SQLiteStorage(CustomerDirectory, RecordStore):
    """
    SQLite実装

    ユーザーディレクトリとレコードストアを1つの SQLite データベースで提供します。
    書き込みは最大5秒のロック待ちでタイムアウトします。
    """

    WRITE_TIMEOUT_SECONDS = 5

    def __init__(self, db_path: str = "call_recordings.db"):
        """
        SQLiteStorageを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        データベース接続のコンテキストマネージャー

        Yields:
            SQLite接続オブジェクト

        Raises:
            StorageError: 接続または操作に失敗した場合
        """
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.WRITE_TIMEOUT_SECONDS)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        create_users_table = """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name VARCHAR(255) NOT NULL,
            email VARCHAR(255) NOT NULL UNIQUE,
            i_customer VARCHAR(32),
            is_active BOOLEAN NOT NULL DEFAULT 1,
            created_at TIMESTAMP NOT NULL
        )
        """

        create_xdr_table = """
        CREATE TABLE IF NOT EXISTS xdr_records (
            i_xdr INTEGER PRIMARY KEY,
            i_customer VARCHAR(32) NOT NULL,
            connect_time VARCHAR(32),
            s3_path TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """

        create_xdr_customer_index = """
        CREATE INDEX IF NOT EXISTS idx_xdr_records_i_customer ON xdr_records(i_customer)
        """

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(create_users_table)
            cursor.execute(create_xdr_table)
            cursor.execute(create_xdr_customer_index)
            conn.commit()

    def add_user(
        self,
        name: str,
        email: str,
        i_customer: Optional[str] = None,
        is_active: bool = True
    ) -> int:
        """
        ユーザーを追加

        Returns:
            追加したユーザーの ID

        Raises:
            StorageError: 追加に失敗した場合
        """
        sql = """
        INSERT INTO users (name, email, i_customer, is_active, created_at)
        VALUES (?, ?, ?, ?, ?)
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(sql, (
                name,
                email,
                i_customer,
                1 if is_active else 0,
                _now().isoformat()
            ))
            conn.commit()
            return cursor.lastrowid

    def list_customer_ids(self) -> List[str]:
        sql = """
        SELECT i_customer
        FROM users
        WHERE is_active = 1 AND i_customer IS NOT NULL AND i_customer != ''
        ORDER BY id
        """
        with self._get_connection() as conn:
            rows = conn.execute(sql).fetchall()
            return [row["i_customer"] for row in rows]

    def save_record(self, customer_id: str, record: CallRecord) -> None:
        sql = """
        INSERT OR IGNORE INTO xdr_records (
            i_xdr, i_customer, connect_time, s3_path, created_at, updated_at
        ) VALUES (?, ?, ?, NULL, ?, ?)
        """
        now = _now().isoformat()
        with self._get_connection() as conn:
            conn.execute(sql, (record.i_xdr, customer_id, record.connect_time, now, now))
            conn.commit()

    def get_archive_path(self, record_id: int) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT s3_path FROM xdr_records WHERE i_xdr = ?",
                (record_id,)
            ).fetchone()
            if row is None:
                return None
            return row["s3_path"]

    def acknowledge(self, record_id: int, archive_path: str) -> None:
        sql = """
        UPDATE xdr_records
        SET s3_path = ?, updated_at = ?
        WHERE i_xdr = ?
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(sql, (archive_path, _now().isoformat(), record_id))
                conn.commit()
                updated = cursor.rowcount
        except StorageError as e:
            raise AcknowledgeError(
                f"Failed to record archive path for i_xdr {record_id}: {e}"
            ) from e

        if updated == 0:
            raise AcknowledgeError(f"XDR record not found: i_xdr {record_id}")

    def list_archive_paths(self, prefix: str) -> Set[str]:
        # LIKE のワイルドカードをエスケープ
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT s3_path FROM xdr_records WHERE s3_path LIKE ? ESCAPE '\\'",
                (escaped + "%",)
            ).fetchall()
            return {row["s3_path"] for row in rows}


def _now() -> datetime:
    return datetime.now(timezone.utc)
