"""
スケジューラーモジュール (Scheduler Module)

一定間隔でバックアップジョブを起動するバックグラウンドスレッドを提供します。
"""

import threading
from datetime import timedelta
from typing import Optional

from .backup import BackupOrchestrator
from .logging_setup import get_logger


logger = get_logger(__name__)


class BackupScheduler:
    """
    バックアップジョブの定期実行

    開始直後に1回実行し、その後 interval ごとに実行します。
    ジョブの結果はスケジューラーへは返されず、ログにのみ出力されます。

    Attributes:
        orchestrator: バックアップジョブ
        interval: 実行間隔
    """

    def __init__(self, orchestrator: BackupOrchestrator, interval: timedelta):
        self.orchestrator = orchestrator
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """スケジューラースレッドを開始"""
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="backup-scheduler",
            daemon=True
        )
        self._thread.start()
        logger.info("backup_scheduler_started", interval_seconds=self.interval.total_seconds())

    def stop(self, timeout: Optional[float] = None) -> None:
        """スケジューラースレッドを停止（実行中のジョブは完了まで待つ）"""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("backup_scheduler_stopped")

    def trigger(self) -> bool:
        """
        バックアップを即時にバックグラウンドで実行

        Returns:
            実行を開始した場合は True、既に実行中の場合は False
        """
        if self.orchestrator.is_running:
            return False
        thread = threading.Thread(target=self._tick, name="backup-manual-run", daemon=True)
        thread.start()
        return True

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._tick()
            self._stop_event.wait(self.interval.total_seconds())

    def _tick(self) -> None:
        try:
            self.orchestrator.run()
        except Exception as e:
            # スケジューラースレッドを止めないためにログのみ出力
            logger.error(
                "backup_run_error",
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True
            )
