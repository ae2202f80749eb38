#!/usr/bin/env python3
"""
録音バックアップサービス アプリケーションエントリーポイント

設定の読み込み、検証、コンポーネントの初期化を行い、
バックアップスケジューラーと運用向け Flask サーバーを起動します。

Usage:
    python main.py

Environment Variables (Required):
    - PORTAONE_USERNAME: PortaOne ログインユーザー
    - PORTAONE_PASSWORD: PortaOne ログインパスワード
    - S3_BUCKET_NAME: 録音のアーカイブ先バケット

Environment Variables (Optional):
    - PORTAONE_BASE_URL / PORTAONE_TIMEOUT / PORTAONE_MAX_RETRIES / PORTAONE_RETRY_BACKOFF
    - REDIS_HOST / REDIS_PORT / REDIS_PASSWORD / REDIS_DB
    - S3_ENDPOINT_URL / AWS_REGION / AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
    - DATABASE_PATH / STAGING_DIR
    - BACKUP_INTERVAL_MINUTES: バックアップ実行間隔（分） (デフォルト: 1440)
    - RECORD_WORKERS: 顧客ごとの並列ダウンロード数 (デフォルト: 1)
    - CUSTOMER_IDS: バックアップ対象の顧客 ID (カンマ区切り、未指定時はユーザーテーブル)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 5000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from dotenv import load_dotenv

from recording_backup.app import create_app
from recording_backup.config import Config, ConfigurationError


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    # .env があれば環境変数として読み込む（既存の環境変数は上書きしない）
    load_dotenv()

    try:
        print("設定を読み込んでいます...")
        config = Config.from_env()
        print("設定の読み込みが完了しました。")

        print("アプリケーションを初期化しています...")
        app = create_app(config)
        print("アプリケーションの初期化が完了しました。")

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "5000"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        scheduler = app.config["BACKUP_SCHEDULER"]
        scheduler.start()

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        print(f"バックアップ間隔: {config.backup_interval_minutes} 分")
        print("サーバーを停止するには Ctrl+C を押してください。")

        # リローダーはスケジューラーを二重に起動するため無効化
        app.run(host=host, port=port, debug=debug, use_reloader=False)

        scheduler.stop(timeout=5)
        return 0

    except ConfigurationError as e:
        print(f"\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n必要な環境変数を設定してから再度実行してください。", file=sys.stderr)
        print("\n必須の環境変数:", file=sys.stderr)
        print("  - PORTAONE_USERNAME: PortaOne ログインユーザー", file=sys.stderr)
        print("  - PORTAONE_PASSWORD: PortaOne ログインパスワード", file=sys.stderr)
        print("  - S3_BUCKET_NAME: 録音のアーカイブ先バケット", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0

    except Exception as e:
        print(f"\n[エラー] 予期しないエラーが発生しました:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
