"""
アーカイブストアモジュール (Archive Store Module)

ローカルに保存した録音ファイルを S3 互換オブジェクトストレージへアップロードします。
"""

import os
from typing import List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import Config
from .logging_setup import get_logger


logger = get_logger(__name__)


class ArchiveError(Exception):
    """
    アーカイブエラー

    アップロード対象ファイルの欠落、ネットワークエラー、権限エラーを表します。

    Attributes:
        message: エラーメッセージ
        key: 対象のオブジェクトキー
    """

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


def build_archive_key(customer_id: str, date_string: str, record_id: int) -> str:
    """
    アーカイブキーを生成

    同じ顧客・日付・XDR は常に同じキーになります。

    Returns:
        {customer_id}/{YYYY-MM-DD}/recording_{i_xdr}.wav
    """
    return f"{customer_id}/{date_string}/recording_{record_id}.wav"


def create_s3_client(config: Config):
    """
    設定から S3 クライアントを作成

    S3_ENDPOINT_URL が指定されている場合は S3 互換ストレージに接続します。
    """
    return boto3.client(
        "s3",
        endpoint_url=config.s3_endpoint_url,
        region_name=config.aws_region,
        aws_access_key_id=config.aws_access_key_id,
        aws_secret_access_key=config.aws_secret_access_key,
        config=BotoConfig(
            signature_version="s3v4",
            connect_timeout=10,
            read_timeout=60,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    )


class ArchiveStore:
    """
    録音ファイルのアーカイブ先

    既存キーへの書き込みは上書き (last write wins) です。

    Attributes:
        s3_client: boto3 S3 クライアント
    """

    def __init__(self, s3_client):
        """
        ArchiveStore を初期化

        Args:
            s3_client: boto3 S3 クライアント
        """
        self.s3_client = s3_client

    def upload(self, local_path: str, bucket: str, key: str) -> None:
        """
        ローカルファイルをオブジェクトストレージへアップロード

        Args:
            local_path: アップロードするファイルのパス
            bucket: バケット名
            key: オブジェクトキー

        Raises:
            ArchiveError: ファイルが存在しない、またはアップロードに失敗した場合
        """
        if not os.path.isfile(local_path):
            raise ArchiveError(f"Staged file not found: {local_path}", key=key)

        try:
            self.s3_client.upload_file(
                local_path,
                bucket,
                key,
                ExtraArgs={"ContentType": "audio/wav"}
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise ArchiveError(
                f"S3 rejected upload of s3://{bucket}/{key}: {code}", key=key
            ) from e
        except (S3UploadFailedError, BotoCoreError) as e:
            raise ArchiveError(f"Failed to upload s3://{bucket}/{key}: {e}", key=key) from e
        except OSError as e:
            raise ArchiveError(f"Failed to read {local_path}: {e}", key=key) from e

        logger.info(
            "archive_upload_completed",
            bucket=bucket,
            key=key,
            file_size=os.path.getsize(local_path)
        )

    def list_keys(self, bucket: str, prefix: str) -> List[str]:
        """
        プレフィックス配下のオブジェクトキー一覧を取得

        Args:
            bucket: バケット名
            prefix: キーのプレフィックス（例: "4821/2024-03-01/"）

        Returns:
            オブジェクトキーのリスト

        Raises:
            ArchiveError: 一覧取得に失敗した場合
        """
        keys: List[str] = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
        except (ClientError, BotoCoreError) as e:
            raise ArchiveError(f"Failed to list s3://{bucket}/{prefix}: {e}") from e
        return keys
