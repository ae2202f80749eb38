"""
Flask アプリケーションモジュール (Flask Application Module)

録音バックアップサービスの運用向け Flask アプリケーションを提供します。
ヘルスチェック、バックアップの手動実行、実行結果と照合結果の参照を行います。
"""

import re
import traceback
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request, Response

from .archive_store import ArchiveError, ArchiveStore, create_s3_client
from .backup import BackupOrchestrator
from .billing_client import BillingClient
from .config import Config
from .logging_setup import configure_structlog, get_logger
from .reconcile import Reconciler
from .scheduler import BackupScheduler
from .session_cache import create_redis_client
from .storage import SQLiteStorage, StaticCustomerDirectory, StorageError


DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Args:
        error_type: エラーの種類
        message: エラーメッセージ
        status_code: HTTP ステータスコード
        details: 追加の詳細情報（オプション）

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def create_app(
    config: Optional[Config] = None,
    storage: Optional[SQLiteStorage] = None,
    billing_client: Optional[BillingClient] = None,
    archive_store: Optional[ArchiveStore] = None
) -> Flask:
    """
    Flask アプリケーションを作成

    設定からバックアップジョブの各コンポーネントを構築し、
    スケジューラーとともに app.config に保存します。
    スケジューラーの開始は呼び出し元（main.py）が行います。

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        storage: ストレージ（テスト時に注入）
        billing_client: PortaOne クライアント（テスト時に注入）
        archive_store: アーカイブストア（テスト時に注入）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    if config is None:
        config = Config.from_env()

    app.config["BACKUP_CONFIG"] = config

    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        portaone_base_url=config.portaone_base_url,
        bucket=config.s3_bucket_name
    )

    if storage is None:
        storage = SQLiteStorage(config.database_path)
    app.config["STORAGE"] = storage

    # CUSTOMER_IDS が指定されていればユーザーテーブルより優先する
    if config.customer_ids:
        customer_directory = StaticCustomerDirectory(config.customer_ids)
        logger.info("customer_directory_configured", source="env", count=len(config.customer_ids))
    else:
        customer_directory = storage
        logger.info("customer_directory_configured", source="users_table")
    app.config["CUSTOMER_DIRECTORY"] = customer_directory

    if billing_client is None:
        billing_client = BillingClient(config, session_store=create_redis_client(config))
    app.config["BILLING_CLIENT"] = billing_client

    if archive_store is None:
        archive_store = ArchiveStore(create_s3_client(config))
    app.config["ARCHIVE_STORE"] = archive_store

    orchestrator = BackupOrchestrator(
        billing_client=billing_client,
        archive_store=archive_store,
        customer_directory=customer_directory,
        record_store=storage,
        bucket=config.s3_bucket_name,
        staging_dir=config.staging_dir,
        record_workers=config.record_workers
    )
    app.config["BACKUP_ORCHESTRATOR"] = orchestrator

    scheduler = BackupScheduler(
        orchestrator,
        interval=timedelta(minutes=config.backup_interval_minutes)
    )
    app.config["BACKUP_SCHEDULER"] = scheduler

    reconciler = Reconciler(
        archive_store=archive_store,
        record_store=storage,
        bucket=config.s3_bucket_name,
        staging_dir=config.staging_dir
    )
    app.config["RECONCILER"] = reconciler

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning("not_found_error", path=request.path, method=request.method)
        return create_error_response(
            error_type="not_found",
            message=str(error.description) if hasattr(error, 'description') else "Not Found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        """
        405 Method Not Allowed エラーハンドラー

        許可されていない HTTP メソッドを処理します。
        """
        logger.warning(
            "method_not_allowed_error",
            error_type="method_not_allowed",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="method_not_allowed",
            message=str(error.description) if hasattr(error, 'description') else "Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(500)
    def handle_internal_error(error):
        """
        500 Internal Server Error エラーハンドラー

        内部エラーを処理し、スタックトレースをログ出力します。
        """
        logger.error(
            "internal_server_error",
            error_type="internal_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal Server Error",
            status_code=500
        )

    @app.route("/health", methods=["GET"])
    def health_check():
        """
        ヘルスチェックエンドポイント

        Returns:
            JSON レスポンス: {"status": "healthy", "scheduler_running": bool, "backup_running": bool}
        """
        logger.debug("health_check_requested")
        return jsonify({
            "status": "healthy",
            "scheduler_running": scheduler.is_alive,
            "backup_running": orchestrator.is_running
        }), 200

    @app.route("/backup/run", methods=["POST"])
    def trigger_backup():
        """
        バックアップの手動実行

        バックグラウンドで実行を開始し、完了を待たずに 202 を返します。
        既に実行中の場合は 409 を返します。
        """
        started = scheduler.trigger()
        if not started:
            logger.warning("manual_backup_rejected", reason="backup_running")
            return create_error_response(
                error_type="conflict",
                message="Backup run already in progress",
                status_code=409
            )

        logger.info("manual_backup_triggered", remote_addr=request.remote_addr)
        return jsonify({"status": "accepted"}), 202

    @app.route("/backup/status", methods=["GET"])
    def backup_status():
        """直近のバックアップ実行結果"""
        report = orchestrator.last_report
        return jsonify({
            "running": orchestrator.is_running,
            "last_report": report.to_dict() if report else None
        }), 200

    @app.route("/backup/orphans", methods=["GET"])
    def backup_orphans():
        """
        未記録のアーカイブキーを検出

        Query Parameters:
            - customer_id: 顧客 ID
            - date: 対象日 (YYYY-MM-DD)
        """
        customer_id = request.args.get("customer_id", "").strip()
        date_string = request.args.get("date", "").strip()

        if not customer_id or not DATE_PATTERN.match(date_string):
            return create_error_response(
                error_type="bad_request",
                message="customer_id and date (YYYY-MM-DD) are required",
                status_code=400
            )

        try:
            orphans = reconciler.find_orphan_keys(customer_id, date_string)
        except (ArchiveError, StorageError) as e:
            logger.error(
                "orphan_check_failed",
                customer_id=customer_id,
                date=date_string,
                error=str(e)
            )
            return create_error_response(
                error_type="reconcile_failed",
                message=str(e),
                status_code=502
            )

        return jsonify({
            "customer_id": customer_id,
            "date": date_string,
            "orphan_keys": orphans
        }), 200

    @app.route("/backup/staged", methods=["GET"])
    def backup_staged():
        """残っている一時保存ファイルの XDR 一覧"""
        return jsonify({"staged_records": reconciler.find_stale_staged_files()}), 200

    return app
