"""
Config クラスのユニットテスト
"""

import os
import pytest
from unittest import mock

from recording_backup.config import Config, ConfigurationError


class TestConfigFromEnv:
    """Config.from_env() メソッドのテスト"""

    @pytest.fixture
    def valid_env_vars(self):
        """有効な環境変数のセット"""
        return {
            "PORTAONE_USERNAME": "operator",
            "PORTAONE_PASSWORD": "secret",
            "S3_BUCKET_NAME": "call-recordings",
        }

    def test_from_env_with_valid_required_vars(self, valid_env_vars):
        """
        正常系: 必須環境変数が設定されている場合、Configが正しく作成される
        """
        with mock.patch.dict(os.environ, valid_env_vars, clear=True):
            config = Config.from_env()

            assert config.portaone_username == "operator"
            assert config.portaone_password == "secret"
            assert config.s3_bucket_name == "call-recordings"

    def test_from_env_uses_defaults(self, valid_env_vars):
        """
        正常系: オプション設定が未設定の場合、デフォルト値が使用される
        """
        with mock.patch.dict(os.environ, valid_env_vars, clear=True):
            config = Config.from_env()

            assert config.portaone_base_url == "https://pbwebsrv.intercloud.com.bd"
            assert config.portaone_timeout == 30.0
            assert config.portaone_max_retries == 2
            assert config.redis_host == "localhost"
            assert config.redis_port == 6379
            assert config.redis_password is None
            assert config.s3_endpoint_url is None
            assert config.staging_dir == "recordings"
            assert config.backup_interval_minutes == 1440
            assert config.record_workers == 1
            assert config.log_level == "INFO"
            assert config.customer_ids == []

    def test_from_env_reads_optional_values(self, valid_env_vars):
        """
        正常系: オプション設定が環境変数から読み込まれる
        """
        env_vars = {
            **valid_env_vars,
            "PORTAONE_BASE_URL": "https://billing.example.com",
            "PORTAONE_TIMEOUT": "12.5",
            "REDIS_HOST": "redis.internal",
            "REDIS_PORT": "6380",
            "REDIS_PASSWORD": "redispass",
            "S3_ENDPOINT_URL": "https://s3.example.com",
            "BACKUP_INTERVAL_MINUTES": "5",
            "RECORD_WORKERS": "4",
            "LOG_LEVEL": "DEBUG",
        }
        with mock.patch.dict(os.environ, env_vars, clear=True):
            config = Config.from_env()

            assert config.portaone_base_url == "https://billing.example.com"
            assert config.portaone_timeout == 12.5
            assert config.redis_host == "redis.internal"
            assert config.redis_port == 6380
            assert config.redis_password == "redispass"
            assert config.s3_endpoint_url == "https://s3.example.com"
            assert config.backup_interval_minutes == 5
            assert config.record_workers == 4
            assert config.log_level == "DEBUG"

    def test_from_env_empty_optional_secret_becomes_none(self, valid_env_vars):
        """
        正常系: 空文字列のオプション認証情報は None として扱われる
        """
        env_vars = {**valid_env_vars, "AWS_ACCESS_KEY_ID": "", "REDIS_PASSWORD": ""}
        with mock.patch.dict(os.environ, env_vars, clear=True):
            config = Config.from_env()

            assert config.aws_access_key_id is None
            assert config.redis_password is None

    def test_from_env_parses_customer_ids(self, valid_env_vars):
        """
        正常系: CUSTOMER_IDS はカンマ区切りで読み込まれ、空要素と空白は除去される
        """
        env_vars = {**valid_env_vars, "CUSTOMER_IDS": " 4821, 7,,9000 ,"}
        with mock.patch.dict(os.environ, env_vars, clear=True):
            config = Config.from_env()

            assert config.customer_ids == ["4821", "7", "9000"]

    def test_zero_retry_backoff_is_accepted(self, valid_env_vars):
        """
        正常系: PORTAONE_RETRY_BACKOFF=0 は待機なしのリトライとして許可される
        """
        env_vars = {**valid_env_vars, "PORTAONE_RETRY_BACKOFF": "0"}
        with mock.patch.dict(os.environ, env_vars, clear=True):
            config = Config.from_env()

            assert config.portaone_retry_backoff == 0


class TestConfigValidation:
    """Config.validate() メソッドのテスト"""

    def test_missing_all_required_vars_lists_every_field(self):
        """
        異常系: 必須環境変数がすべて欠落している場合、すべての変数名を含むエラー
        """
        with mock.patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

            message = str(exc_info.value)
            assert "PORTAONE_USERNAME" in message
            assert "PORTAONE_PASSWORD" in message
            assert "S3_BUCKET_NAME" in message

    def test_missing_bucket(self):
        """
        異常系: S3_BUCKET_NAME が欠落している場合
        """
        env_vars = {"PORTAONE_USERNAME": "operator", "PORTAONE_PASSWORD": "secret"}
        with mock.patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

            assert "S3_BUCKET_NAME" in str(exc_info.value)
            assert "PORTAONE_USERNAME" not in str(exc_info.value)

    def test_non_numeric_value_raises_configuration_error(self):
        """
        異常系: 数値の環境変数が解析できない場合
        """
        env_vars = {
            "PORTAONE_USERNAME": "operator",
            "PORTAONE_PASSWORD": "secret",
            "S3_BUCKET_NAME": "bucket",
            "REDIS_PORT": "not-a-port",
        }
        with mock.patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ConfigurationError):
                Config.from_env()

    @pytest.mark.parametrize("field,value", [
        ("portaone_timeout", 0),
        ("portaone_max_retries", -1),
        ("portaone_retry_backoff", -0.5),
        ("backup_interval_minutes", 0),
        ("record_workers", 0),
        ("log_level", "VERBOSE"),
        ("portaone_base_url", "ftp://billing.example.com"),
    ])
    def test_invalid_values(self, field, value):
        """
        異常系: 不正な値は ConfigurationError になる
        """
        config = Config(
            portaone_username="operator",
            portaone_password="secret",
            s3_bucket_name="bucket",
        )
        setattr(config, field, value)

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_lowercase_log_level_is_accepted(self):
        """
        正常系: ログレベルは大文字小文字を区別しない
        """
        config = Config(
            portaone_username="operator",
            portaone_password="secret",
            s3_bucket_name="bucket",
            log_level="debug",
        )
        config.validate()
