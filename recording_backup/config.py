"""
設定管理モジュール (Configuration Management Module)

環境変数からバックアップサービスの設定を読み込み、検証を行います。
設定はプロセス起動時に一度だけ構築され、各コンポーネントへ明示的に渡されます。
"""

from dataclasses import dataclass, field
from typing import List, Optional
import os


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


@dataclass
class Config:
    """
    アプリケーション設定

    環境変数から設定を読み込み、必須設定のバリデーションを行います。
    """
    # PortaOne (課金サービス) 認証情報 (必須)
    portaone_username: str
    portaone_password: str

    # オブジェクトストレージ設定
    s3_bucket_name: str

    # PortaOne 接続設定
    portaone_base_url: str = "https://pbwebsrv.intercloud.com.bd"
    portaone_timeout: float = 30.0
    portaone_max_retries: int = 2
    portaone_retry_backoff: float = 1.0

    # Redis (セッションキャッシュ) 設定
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # S3 互換ストレージ接続設定
    s3_endpoint_url: Optional[str] = None
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # ローカル設定
    database_path: str = "call_recordings.db"
    staging_dir: str = "recordings"

    # バックアップジョブ設定
    backup_interval_minutes: int = 1440
    record_workers: int = 1
    customer_ids: List[str] = field(default_factory=list)

    # ロギング設定
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> 'Config':
        """
        環境変数から設定を読み込む

        必須の環境変数:
            - PORTAONE_USERNAME: PortaOne ログインユーザー
            - PORTAONE_PASSWORD: PortaOne ログインパスワード
            - S3_BUCKET_NAME: 録音のアーカイブ先バケット

        オプションの環境変数:
            - PORTAONE_BASE_URL: PortaOne API のベース URL
            - PORTAONE_TIMEOUT: HTTP タイムアウト（秒） (デフォルト: 30)
            - PORTAONE_MAX_RETRIES: 通信エラー時の最大リトライ回数 (デフォルト: 2)
            - PORTAONE_RETRY_BACKOFF: リトライ間隔の基準値（秒） (デフォルト: 1.0)
            - REDIS_HOST / REDIS_PORT / REDIS_PASSWORD / REDIS_DB
            - S3_ENDPOINT_URL / AWS_REGION / AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
            - DATABASE_PATH: SQLite データベースのパス (デフォルト: call_recordings.db)
            - STAGING_DIR: 録音の一時保存ディレクトリ (デフォルト: recordings)
            - BACKUP_INTERVAL_MINUTES: バックアップ実行間隔（分） (デフォルト: 1440)
            - RECORD_WORKERS: 顧客ごとの並列ダウンロード数 (デフォルト: 1)
            - CUSTOMER_IDS: バックアップ対象の顧客 ID (カンマ区切り)。
              指定した場合はユーザーテーブルの代わりに使用
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している、または数値が不正な場合
        """
        try:
            config = cls(
                portaone_username=os.environ.get("PORTAONE_USERNAME", ""),
                portaone_password=os.environ.get("PORTAONE_PASSWORD", ""),
                s3_bucket_name=os.environ.get("S3_BUCKET_NAME", ""),
                portaone_base_url=os.environ.get(
                    "PORTAONE_BASE_URL", "https://pbwebsrv.intercloud.com.bd"
                ),
                portaone_timeout=float(os.environ.get("PORTAONE_TIMEOUT", "30")),
                portaone_max_retries=int(os.environ.get("PORTAONE_MAX_RETRIES", "2")),
                portaone_retry_backoff=float(os.environ.get("PORTAONE_RETRY_BACKOFF", "1.0")),
                redis_host=os.environ.get("REDIS_HOST", "localhost"),
                redis_port=int(os.environ.get("REDIS_PORT", "6379")),
                redis_password=os.environ.get("REDIS_PASSWORD") or None,
                redis_db=int(os.environ.get("REDIS_DB", "0")),
                s3_endpoint_url=os.environ.get("S3_ENDPOINT_URL") or None,
                aws_region=os.environ.get("AWS_REGION", "us-east-1"),
                aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID") or None,
                aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY") or None,
                database_path=os.environ.get("DATABASE_PATH", "call_recordings.db"),
                staging_dir=os.environ.get("STAGING_DIR", "recordings"),
                backup_interval_minutes=int(os.environ.get("BACKUP_INTERVAL_MINUTES", "1440")),
                record_workers=int(os.environ.get("RECORD_WORKERS", "1")),
                customer_ids=_parse_list(os.environ.get("CUSTOMER_IDS", "")),
                log_level=os.environ.get("LOG_LEVEL", "INFO"),
            )
        except ValueError as e:
            raise ConfigurationError(f"数値の環境変数を解析できません: {e}") from e

        # バリデーション実行
        config.validate()

        return config

    def validate(self) -> None:
        """
        設定の妥当性を検証

        必須設定が欠落している場合、明確なエラーメッセージで
        ConfigurationError を発生させます。

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        missing_fields = []

        if not self.portaone_username:
            missing_fields.append("PORTAONE_USERNAME")
        if not self.portaone_password:
            missing_fields.append("PORTAONE_PASSWORD")
        if not self.s3_bucket_name:
            missing_fields.append("S3_BUCKET_NAME")

        if missing_fields:
            error_message = (
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )
            raise ConfigurationError(error_message)

        if not self.portaone_base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"PORTAONE_BASE_URL は http(s) の URL である必要があります: {self.portaone_base_url}"
            )

        if self.portaone_timeout <= 0:
            raise ConfigurationError(
                f"PORTAONE_TIMEOUT は正の数である必要があります: {self.portaone_timeout}"
            )

        if self.portaone_max_retries < 0:
            raise ConfigurationError(
                f"PORTAONE_MAX_RETRIES は0以上の整数である必要があります: {self.portaone_max_retries}"
            )

        if self.portaone_retry_backoff < 0:
            raise ConfigurationError(
                f"PORTAONE_RETRY_BACKOFF は0以上の数である必要があります: {self.portaone_retry_backoff}"
            )

        if self.backup_interval_minutes <= 0:
            raise ConfigurationError(
                f"BACKUP_INTERVAL_MINUTES は正の整数である必要があります: {self.backup_interval_minutes}"
            )

        if self.record_workers <= 0:
            raise ConfigurationError(
                f"RECORD_WORKERS は正の整数である必要があります: {self.record_workers}"
            )

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )


def _parse_list(value: str) -> List[str]:
    """カンマ区切りの文字列をリストに変換（空要素は除外）"""
    return [item.strip() for item in value.split(",") if item.strip()]
