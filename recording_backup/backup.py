"""
録音バックアップモジュール (Recording Backup Module)

前日分の通話録音を PortaOne からダウンロードし、
オブジェクトストレージへアーカイブするバックアップジョブを提供します。

処理フロー:
1. エクスポート期間（前日 00:00:00〜23:59:59, UTC+6）を計算
2. ユーザーディレクトリから顧客 ID 一覧を取得
3. 顧客ごとに XDR 一覧を取得し、録音をダウンロードしてローカルに一時保存
4. アーカイブへアップロードし、レコードにアーカイブパスを記録
5. 一時保存ファイルを削除

1件の失敗は他のレコード・顧客の処理を中断しません。
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time as dt_time, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .archive_store import ArchiveError, ArchiveStore, build_archive_key
from .billing_client import BillingClient, BillingError
from .logging_setup import get_logger
from .models import BILLING_TIMEZONE, BackupRunReport, CallRecord, ExportWindow
from .storage import AcknowledgeError, CustomerDirectory, RecordStore, StorageError


logger = get_logger(__name__)

# レコード単位の処理結果
EXPORTED = "exported"
SKIPPED = "skipped"
FAILED = "failed"
UNACKNOWLEDGED = "unacknowledged"


class StagingError(Exception):
    """ローカルの一時保存ファイルの書き込みに失敗した場合のエラー"""
    pass


def compute_export_window(now: Optional[datetime] = None) -> ExportWindow:
    """
    エクスポート期間を計算

    UTC+6 における now の前日 00:00:00 から 23:59:59 までを返します。
    タイムゾーン情報のない now は UTC として扱います。

    Args:
        now: 基準日時（省略時は現在時刻）

    Returns:
        ExportWindow
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    previous_day = now.astimezone(BILLING_TIMEZONE).date() - timedelta(days=1)
    return ExportWindow(
        start=datetime.combine(previous_day, dt_time(0, 0, 0), tzinfo=BILLING_TIMEZONE),
        end=datetime.combine(previous_day, dt_time(23, 59, 59), tzinfo=BILLING_TIMEZONE),
    )


def staged_file_path(staging_dir: str, record_id: int) -> str:
    """XDR の一時保存ファイルのパス"""
    return os.path.join(staging_dir, f"recording_{record_id}.wav")


class BackupOrchestrator:
    """
    録音バックアップジョブ

    スケジューラーから1ティックごとに run() が呼び出されます。
    実行中に次のティックが来た場合、その実行はスキップされます。
    実行結果はログにのみ出力され、スケジューラーへは通知しません。

    Attributes:
        billing_client: PortaOne クライアント
        archive_store: アーカイブストア
        customer_directory: ユーザーディレクトリ
        record_store: XDR レコードストア
        bucket: アーカイブ先バケット名
        staging_dir: 一時保存ディレクトリ
        record_workers: 顧客ごとの並列処理数
        last_report: 直近の実行結果
    """

    def __init__(
        self,
        billing_client: BillingClient,
        archive_store: ArchiveStore,
        customer_directory: CustomerDirectory,
        record_store: RecordStore,
        bucket: str,
        staging_dir: str = "recordings",
        record_workers: int = 1,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        BackupOrchestrator を初期化

        Args:
            billing_client: PortaOne クライアント
            archive_store: アーカイブストア
            customer_directory: ユーザーディレクトリ
            record_store: XDR レコードストア
            bucket: アーカイブ先バケット名
            staging_dir: 一時保存ディレクトリ
            record_workers: 顧客ごとの並列処理数（1 の場合は逐次処理）
            clock: 現在時刻を返す関数（テスト用）
        """
        self.billing_client = billing_client
        self.archive_store = archive_store
        self.customer_directory = customer_directory
        self.record_store = record_store
        self.bucket = bucket
        self.staging_dir = staging_dir
        self.record_workers = max(1, record_workers)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._run_lock = threading.Lock()
        self.last_report: Optional[BackupRunReport] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self, now: Optional[datetime] = None) -> Optional[BackupRunReport]:
        """
        バックアップを1回実行

        Args:
            now: 基準日時（省略時は現在時刻）

        Returns:
            実行結果、他の実行と重なってスキップした場合は None
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning("backup_run_skipped", reason="previous_run_in_progress")
            return None

        try:
            return self._run(now or self._clock())
        finally:
            self._run_lock.release()

    def _run(self, now: datetime) -> BackupRunReport:
        window = compute_export_window(now)
        report = BackupRunReport(window_date=window.date_string, started_at=self._clock())

        logger.info(
            "backup_run_started",
            window_start=window.from_date,
            window_end=window.to_date,
            window_date=window.date_string
        )

        try:
            Path(self.staging_dir).mkdir(parents=True, exist_ok=True)
            customers = self.customer_directory.list_customer_ids()
        except (OSError, StorageError) as e:
            logger.error("backup_run_aborted", error_type=type(e).__name__, error=str(e))
            return self._finish(report)

        report.customers_total = len(customers)
        if not customers:
            logger.warning("backup_run_no_customers", hint="set CUSTOMER_IDS or add active users with i_customer")

        for customer_id in customers:
            try:
                self._process_customer(customer_id, window, report)
            except Exception as e:
                report.customers_failed += 1
                logger.error(
                    "customer_backup_error",
                    customer_id=customer_id,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True
                )

        return self._finish(report)

    def _finish(self, report: BackupRunReport) -> BackupRunReport:
        report.finished_at = self._clock()
        self.last_report = report
        logger.info("backup_run_completed", **report.to_dict())
        return report

    def _process_customer(
        self,
        customer_id: str,
        window: ExportWindow,
        report: BackupRunReport
    ) -> None:
        try:
            records = self.billing_client.list_records(customer_id, window.start, window.end)
        except BillingError as e:
            report.customers_failed += 1
            logger.error(
                "customer_xdr_list_failed",
                customer_id=customer_id,
                operation="list_records",
                error_type=type(e).__name__,
                error=str(e)
            )
            return

        report.records_listed += len(records)
        logger.info("customer_xdr_list_received", customer_id=customer_id, count=len(records))

        if self.record_workers == 1 or len(records) <= 1:
            outcomes = [self._safe_process_record(customer_id, r, window) for r in records]
        else:
            with ThreadPoolExecutor(
                max_workers=self.record_workers,
                thread_name_prefix=f"backup-{customer_id}"
            ) as executor:
                outcomes = list(executor.map(
                    lambda r: self._safe_process_record(customer_id, r, window),
                    records
                ))

        for outcome in outcomes:
            if outcome == EXPORTED:
                report.records_exported += 1
            elif outcome == SKIPPED:
                report.records_skipped += 1
            elif outcome == UNACKNOWLEDGED:
                report.acknowledge_failures += 1
            else:
                report.records_failed += 1

    def _safe_process_record(
        self,
        customer_id: str,
        record: CallRecord,
        window: ExportWindow
    ) -> str:
        try:
            return self._process_record(customer_id, record, window)
        except Exception as e:
            logger.error(
                "record_backup_error",
                customer_id=customer_id,
                i_xdr=record.i_xdr,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True
            )
            return FAILED

    def _process_record(
        self,
        customer_id: str,
        record: CallRecord,
        window: ExportWindow
    ) -> str:
        """
        1件の XDR の録音をアーカイブ

        アーカイブパスの記録が成功するまで一時保存ファイルは削除しません。
        残った一時保存ファイルは次回の実行で再利用されます。

        Returns:
            処理結果 (exported, skipped, failed, unacknowledged)
        """
        archive_key = build_archive_key(customer_id, window.date_string, record.i_xdr)
        staged_path = staged_file_path(self.staging_dir, record.i_xdr)
        log = logger.bind(customer_id=customer_id, i_xdr=record.i_xdr, archive_key=archive_key)

        try:
            self.record_store.save_record(customer_id, record)
            archive_path = self.record_store.get_archive_path(record.i_xdr)
        except StorageError as e:
            log.error("record_register_failed", operation="save_record", error=str(e))
            return FAILED

        if archive_path:
            log.debug("record_already_exported", archive_path=archive_path)
            self._remove_staged_file(staged_path, log)
            return SKIPPED

        if os.path.isfile(staged_path) and os.path.getsize(staged_path) > 0:
            log.info("staged_recording_reused", staged_path=staged_path)
        else:
            try:
                audio = self.billing_client.fetch_recording(record.i_xdr)
            except BillingError as e:
                log.error(
                    "recording_download_failed",
                    operation="fetch_recording",
                    error_type=type(e).__name__,
                    error=str(e)
                )
                return FAILED

            try:
                self._stage(staged_path, audio)
            except StagingError as e:
                log.error("recording_staging_failed", operation="stage", error=str(e))
                return FAILED

        try:
            self.archive_store.upload(staged_path, self.bucket, archive_key)
        except ArchiveError as e:
            log.error(
                "archive_upload_failed",
                operation="upload",
                staged_path=staged_path,
                error=str(e)
            )
            return FAILED

        try:
            self.record_store.acknowledge(record.i_xdr, archive_key)
        except AcknowledgeError as e:
            # アーカイブ済みだが未記録。一時保存ファイルを残して次回に再試行する
            log.error(
                "archive_acknowledge_failed",
                operation="acknowledge",
                staged_path=staged_path,
                error=str(e)
            )
            return UNACKNOWLEDGED

        self._remove_staged_file(staged_path, log)
        log.info("recording_archived")
        return EXPORTED

    def _stage(self, path: str, audio: bytes) -> None:
        """
        音声データを一時保存ファイルに書き込む

        書き込み途中のファイルが再利用されないよう、一時ファイルに書いてから置き換えます。

        Raises:
            StagingError: 書き込みに失敗した場合
        """
        partial_path = path + ".part"
        try:
            with open(partial_path, "wb") as f:
                f.write(audio)
            os.replace(partial_path, path)
        except OSError as e:
            try:
                os.remove(partial_path)
            except OSError:
                pass
            raise StagingError(f"Failed to write {path}: {e}") from e

    def _remove_staged_file(self, path: str, log) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            log.warning("staged_file_cleanup_failed", staged_path=path, error=str(e))
