"""
照合モジュール (Reconciliation Module)

アーカイブ上のオブジェクトとレコードストアの記録を突き合わせ、
アップロード済みだが未記録のオブジェクトや、残った一時保存ファイルを検出します。
検出のみを行い、修正は行いません。
"""

import os
import re
from typing import List

from .archive_store import ArchiveStore
from .logging_setup import get_logger
from .storage import RecordStore


logger = get_logger(__name__)

STAGED_FILE_PATTERN = re.compile(r"^recording_(\d+)\.wav(\.part)?$")


class Reconciler:
    """
    アーカイブとレコードストアの照合

    Attributes:
        archive_store: アーカイブストア
        record_store: XDR レコードストア
        bucket: アーカイブ先バケット名
        staging_dir: 一時保存ディレクトリ
    """

    def __init__(
        self,
        archive_store: ArchiveStore,
        record_store: RecordStore,
        bucket: str,
        staging_dir: str
    ):
        self.archive_store = archive_store
        self.record_store = record_store
        self.bucket = bucket
        self.staging_dir = staging_dir

    def find_orphan_keys(self, customer_id: str, date_string: str) -> List[str]:
        """
        未記録のアーカイブキーを検出

        Args:
            customer_id: 顧客 ID
            date_string: 対象日 (YYYY-MM-DD)

        Returns:
            アーカイブに存在するがレコードに記録されていないキーのリスト

        Raises:
            ArchiveError: アーカイブの一覧取得に失敗した場合
            StorageError: レコードストアの参照に失敗した場合
        """
        prefix = f"{customer_id}/{date_string}/"
        archived = self.archive_store.list_keys(self.bucket, prefix)
        acknowledged = self.record_store.list_archive_paths(prefix)
        orphans = sorted(key for key in archived if key not in acknowledged)

        if orphans:
            logger.warning(
                "orphan_archive_keys_found",
                customer_id=customer_id,
                date=date_string,
                count=len(orphans)
            )
        return orphans

    def find_stale_staged_files(self) -> List[int]:
        """
        残っている一時保存ファイルの XDR 識別子を取得

        書き込み途中で中断された .part ファイルも対象です。
        同じ XDR の .wav と .part が両方ある場合は1件として扱います。

        Returns:
            i_xdr のリスト（昇順、重複なし）
        """
        if not os.path.isdir(self.staging_dir):
            return []

        record_ids = set()
        for name in os.listdir(self.staging_dir):
            match = STAGED_FILE_PATTERN.match(name)
            if match:
                record_ids.add(int(match.group(1)))
        return sorted(record_ids)
