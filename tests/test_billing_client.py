"""
BillingClient クラスのユニットテスト
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from recording_backup.billing_client import (
    AuthError,
    BillingClient,
    DecodeError,
    TransportError,
    format_billing_datetime,
)
from recording_backup.config import Config
from recording_backup.models import BILLING_TIMEZONE


BASE_URL = "https://billing.example.com"


def _response(status_code=200, json_data=None, content=b"", json_error=False):
    """requests.Response のモックを作成"""
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.content = content
    response.text = json.dumps(json_data) if json_data is not None else ""
    if json_error:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def config():
    return Config(
        portaone_username="operator",
        portaone_password="secret",
        s3_bucket_name="bucket",
        portaone_base_url=BASE_URL,
        portaone_timeout=15.0,
        portaone_max_retries=2,
        portaone_retry_backoff=1.0,
    )


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def session_cache():
    cache = MagicMock()
    cache.get_or_create.return_value = "session-abc"
    return cache


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def client(config, http, session_cache, sleep):
    return BillingClient(config, session_cache=session_cache, http=http, sleep=sleep)


@pytest.fixture
def window():
    start = datetime(2024, 3, 1, 0, 0, 0, tzinfo=BILLING_TIMEZONE)
    end = datetime(2024, 3, 1, 23, 59, 59, tzinfo=BILLING_TIMEZONE)
    return start, end


class TestBillingClientInit:
    """BillingClient 初期化のテスト"""

    def test_requires_session_store_or_cache(self, config):
        """
        異常系: セッションストアもキャッシュも指定されていない場合
        """
        with pytest.raises(ValueError):
            BillingClient(config)

    def test_builds_session_cache_bound_to_login(self, config):
        """
        正常系: セッションストアを渡すと、自身のログインを使う SessionCache が作成される
        """
        store = MagicMock()
        client = BillingClient(config, session_store=store, http=MagicMock())

        assert client.session_cache.store is store
        assert client.session_cache.login == client.login

    def test_base_url_trailing_slash_is_removed(self, config, session_cache):
        """
        正常系: ベース URL 末尾のスラッシュは除去される
        """
        config.portaone_base_url = BASE_URL + "/"
        client = BillingClient(config, session_cache=session_cache, http=MagicMock())

        assert client.base_url == BASE_URL


class TestLogin:
    """login() メソッドのテスト"""

    def test_login_success(self, client, http):
        """
        正常系: JSON でログインし、session_id を返す
        """
        http.post.return_value = _response(json_data={"session_id": "new-session"})

        assert client.login() == "new-session"

        http.post.assert_called_once_with(
            BASE_URL + "/rest/Session/login",
            timeout=15.0,
            json={"params": {"login": "operator", "password": "secret"}},
        )

    def test_login_rejected(self, client, http):
        """
        異常系: 2xx 以外のレスポンスは AuthError
        """
        http.post.return_value = _response(status_code=500, json_data={"faultstring": "x"})

        with pytest.raises(AuthError) as exc_info:
            client.login()
        assert exc_info.value.status_code == 500

    def test_login_invalid_json(self, client, http):
        """
        異常系: JSON として解析できないレスポンスは AuthError
        """
        http.post.return_value = _response(json_error=True)

        with pytest.raises(AuthError):
            client.login()

    @pytest.mark.parametrize("body", [{}, {"session_id": ""}, {"session_id": 123}, []])
    def test_login_missing_session_id(self, client, http, body):
        """
        異常系: session_id が欠落または文字列でない場合は AuthError
        """
        http.post.return_value = _response(json_data=body)

        with pytest.raises(AuthError):
            client.login()

    def test_login_transport_failure(self, client, http):
        """
        異常系: リトライ後も接続できない場合は AuthError
        """
        http.post.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(AuthError):
            client.login()
        assert http.post.call_count == 3


class TestListRecords:
    """list_records() メソッドのテスト"""

    def test_request_payload(self, client, http, session_cache, window):
        """
        正常系: auth_info と params をフォームで送信し、顧客 ID は整数で送る
        """
        http.post.return_value = _response(json_data={"xdr_list": []})

        client.list_records("4821", *window)

        session_cache.get_or_create.assert_called_once()
        args, kwargs = http.post.call_args
        assert args[0] == BASE_URL + "/rest/Customer/get_customer_xdrs"
        assert kwargs["timeout"] == 15.0
        assert json.loads(kwargs["data"]["auth_info"]) == {"session_id": "session-abc"}
        assert json.loads(kwargs["data"]["params"]) == {
            "billing_model": 1,
            "call_recording": 1,
            "from_date": "2024-03-01 00:00:00",
            "to_date": "2024-03-01 23:59:59",
            "i_customer": 4821,
        }

    def test_returns_call_records(self, client, http, window):
        """
        正常系: xdr_list の各要素が CallRecord に変換される
        """
        http.post.return_value = _response(json_data={
            "xdr_list": [
                {"i_xdr": 555, "connect_time": "2024-03-01 10:00:00"},
                {"i_xdr": "556", "connect_time": None, "i_customer": 4821},
            ]
        })

        records = client.list_records("4821", *window)

        assert [r.i_xdr for r in records] == [555, 556]
        assert records[0].connect_time == "2024-03-01 10:00:00"
        assert records[1].i_customer == "4821"

    @pytest.mark.parametrize("body", [{"xdr_list": []}, {"xdr_list": None}, {}])
    def test_empty_or_missing_list(self, client, http, window, body):
        """
        正常系: xdr_list が空または欠落している場合は空リスト
        """
        http.post.return_value = _response(json_data=body)

        assert client.list_records("4821", *window) == []

    @pytest.mark.parametrize("body", [
        {"xdr_list": "not-a-list"},
        {"xdr_list": {"i_xdr": 555}},
        ["not", "an", "object"],
    ])
    def test_malformed_response(self, client, http, window, body):
        """
        異常系: レスポンス全体の構造が不正な場合は DecodeError
        """
        http.post.return_value = _response(json_data=body)

        with pytest.raises(DecodeError):
            client.list_records("4821", *window)

    def test_malformed_element_is_skipped_and_siblings_kept(self, client, http, window):
        """
        異常系: 不正な要素のみスキップされ、同じレスポンスの他の XDR は返される
        """
        http.post.return_value = _response(json_data={
            "xdr_list": [{"i_xdr": 555}, {"i_xdr": None}, {"i_xdr": 556}]
        })

        records = client.list_records("4821", *window)

        assert [r.i_xdr for r in records] == [555, 556]

    @pytest.mark.parametrize("bad_item", [
        {"connect_time": "2024-03-01 10:00:00"},
        {"i_xdr": "abc"},
        {"i_xdr": True},
        "555",
    ])
    def test_every_invalid_element_is_skipped(self, client, http, window, bad_item):
        """
        異常系: i_xdr の欠落・型不正の要素はスキップされる
        """
        http.post.return_value = _response(json_data={"xdr_list": [bad_item, {"i_xdr": 7}]})

        assert [r.i_xdr for r in client.list_records("4821", *window)] == [7]

    def test_invalid_json(self, client, http, window):
        """
        異常系: JSON として解析できないレスポンスは DecodeError
        """
        http.post.return_value = _response(json_error=True)

        with pytest.raises(DecodeError):
            client.list_records("4821", *window)

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_rejected_session(self, client, http, window, status_code):
        """
        異常系: セッションが拒否された場合は AuthError（再ログインはしない）
        """
        http.post.return_value = _response(status_code=status_code)

        with pytest.raises(AuthError) as exc_info:
            client.list_records("4821", *window)
        assert exc_info.value.status_code == status_code
        assert http.post.call_count == 1

    def test_client_error_status(self, client, http, window):
        """
        異常系: その他の 4xx は TransportError（リトライしない）
        """
        http.post.return_value = _response(status_code=400)

        with pytest.raises(TransportError) as exc_info:
            client.list_records("4821", *window)
        assert exc_info.value.status_code == 400
        assert http.post.call_count == 1

    def test_session_failure_propagates(self, client, http, session_cache, window):
        """
        異常系: セッションを取得できない場合は HTTP リクエストを送信しない
        """
        session_cache.get_or_create.side_effect = AuthError("login failed")

        with pytest.raises(AuthError):
            client.list_records("4821", *window)
        http.post.assert_not_called()


class TestRetry:
    """通信エラー時のリトライのテスト"""

    def test_retries_connection_error_with_backoff(self, client, http, sleep, window):
        """
        正常系: 接続エラーは指数バックオフでリトライされる
        """
        http.post.side_effect = [
            requests.ConnectionError("reset"),
            requests.Timeout("timed out"),
            _response(json_data={"xdr_list": [{"i_xdr": 1}]}),
        ]

        records = client.list_records("4821", *window)

        assert [r.i_xdr for r in records] == [1]
        assert http.post.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_retries_gateway_status(self, client, http, sleep, window):
        """
        正常系: 503 はリトライされる
        """
        http.post.side_effect = [
            _response(status_code=503),
            _response(json_data={"xdr_list": []}),
        ]

        assert client.list_records("4821", *window) == []
        sleep.assert_called_once_with(1.0)

    def test_gives_up_after_max_retries(self, client, http, sleep, window):
        """
        異常系: リトライ回数を超えた場合は TransportError
        """
        http.post.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(TransportError):
            client.list_records("4821", *window)
        assert http.post.call_count == 3
        assert sleep.call_count == 2

    def test_persistent_gateway_status(self, client, http, window):
        """
        異常系: 最後まで 502 の場合はステータスコード付きの TransportError
        """
        http.post.return_value = _response(status_code=502)

        with pytest.raises(TransportError) as exc_info:
            client.list_records("4821", *window)
        assert exc_info.value.status_code == 502
        assert http.post.call_count == 3

    def test_non_retryable_request_exception(self, client, http, sleep, window):
        """
        異常系: URL 不正などの例外はリトライせずに TransportError
        """
        http.post.side_effect = requests.exceptions.InvalidURL("bad url")

        with pytest.raises(TransportError):
            client.list_records("4821", *window)
        assert http.post.call_count == 1
        sleep.assert_not_called()


class TestFetchRecording:
    """fetch_recording() メソッドのテスト"""

    def test_returns_body_bytes(self, client, http):
        """
        正常系: レスポンスボディをそのまま返す
        """
        http.post.return_value = _response(content=b"RIFF....WAVEfmt ")

        assert client.fetch_recording(555) == b"RIFF....WAVEfmt "

        args, kwargs = http.post.call_args
        assert args[0] == BASE_URL + "/rest/CDR/get_call_recording"
        assert json.loads(kwargs["data"]["params"]) == {"i_xdr": 555}

    def test_empty_body(self, client, http):
        """
        異常系: ボディが空の場合は DecodeError
        """
        http.post.return_value = _response(content=b"")

        with pytest.raises(DecodeError):
            client.fetch_recording(555)

    def test_not_found(self, client, http):
        """
        異常系: 404 は TransportError
        """
        http.post.return_value = _response(status_code=404)

        with pytest.raises(TransportError):
            client.fetch_recording(555)


class TestFormatBillingDatetime:
    """format_billing_datetime() 関数のテスト"""

    def test_converts_utc_to_billing_timezone(self):
        """
        正常系: UTC の日時は UTC+6 に変換される
        """
        value = datetime(2024, 3, 1, 18, 0, 0, tzinfo=timezone.utc)

        assert format_billing_datetime(value) == "2024-03-02 00:00:00"

    def test_naive_datetime_is_billing_local(self):
        """
        正常系: タイムゾーンのない日時は UTC+6 の値として扱う
        """
        assert format_billing_datetime(datetime(2024, 3, 1, 8, 30, 0)) == "2024-03-01 08:30:00"
