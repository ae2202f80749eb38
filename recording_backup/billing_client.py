"""
課金サービスクライアントモジュール (Billing Client Module)

PortaOne REST API へのログイン、顧客ごとの XDR 一覧取得、
通話録音のダウンロードを行います。
"""

import json
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import Config
from .logging_setup import get_logger
from .models import (
    BILLING_DATETIME_FORMAT,
    BILLING_TIMEZONE,
    CallRecord,
    RecordDecodeError,
)
from .session_cache import SessionCache


logger = get_logger(__name__)


class BillingError(Exception):
    """
    課金サービスエラー

    PortaOne との通信で発生したエラーの基底クラスです。

    Attributes:
        message: エラーメッセージ
        status_code: HTTP ステータスコード（レスポンスがある場合）
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(BillingError):
    """ログインまたはセッションの検証に失敗した場合のエラー"""
    pass


class TransportError(BillingError):
    """ネットワークエラー、タイムアウト、2xx 以外のレスポンス"""
    pass


class DecodeError(BillingError):
    """レスポンスの JSON が不正、または必須フィールドが欠落している場合のエラー"""
    pass


def format_billing_datetime(value: datetime) -> str:
    """
    日時を PortaOne 形式 (YYYY-MM-DD HH:MM:SS, UTC+6) に変換

    タイムゾーン情報のない日時は UTC+6 の値として扱います。
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=BILLING_TIMEZONE)
    return value.astimezone(BILLING_TIMEZONE).strftime(BILLING_DATETIME_FORMAT)


class BillingClient:
    """
    PortaOne API クライアント

    認証が必要な呼び出しの前には必ず SessionCache からセッション ID を取得します。
    セッションエラー時に自動で再ログインすることはありません。
    呼び出し元は通常の失敗として扱ってください。

    Attributes:
        base_url: PortaOne API のベース URL
        timeout: HTTP タイムアウト（秒）
        max_retries: 通信エラー時の最大リトライ回数
        session_cache: セッションキャッシュ
    """

    LOGIN_PATH = "/rest/Session/login"
    CUSTOMER_XDRS_PATH = "/rest/Customer/get_customer_xdrs"
    CALL_RECORDING_PATH = "/rest/CDR/get_call_recording"

    # ゲートウェイ系のステータスは一時的な障害としてリトライする
    RETRYABLE_STATUS_CODES = (502, 503, 504)

    def __init__(
        self,
        config: Config,
        session_store=None,
        session_cache: Optional[SessionCache] = None,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        BillingClient を初期化

        Args:
            config: アプリケーション設定
            session_store: セッションを保存する Redis クライアント
            session_cache: 外部で構築済みの SessionCache（テスト用）
            http: requests セッション（テスト用）
            sleep: リトライ待機関数（テスト用）
        """
        self.base_url = config.portaone_base_url.rstrip("/")
        self.timeout = config.portaone_timeout
        self.max_retries = config.portaone_max_retries
        self.retry_backoff = config.portaone_retry_backoff
        self._username = config.portaone_username
        self._password = config.portaone_password
        self.http = http or requests.Session()
        self._sleep = sleep

        if session_cache is None:
            if session_store is None:
                raise ValueError("session_store or session_cache is required")
            session_cache = SessionCache(session_store, login=self.login)
        self.session_cache = session_cache

    def login(self) -> str:
        """
        PortaOne にログインしてセッション ID を取得

        SessionCache からのみ呼び出されます。

        Returns:
            セッション ID

        Raises:
            AuthError: ログインに失敗した場合
        """
        payload = {"params": {"login": self._username, "password": self._password}}

        logger.debug("portaone_login_request", url=self.base_url + self.LOGIN_PATH)

        try:
            response = self._post(self.LOGIN_PATH, json=payload)
        except TransportError as e:
            raise AuthError(f"PortaOne login request failed: {e.message}") from e

        if not response.ok:
            logger.error("portaone_login_rejected", status_code=response.status_code)
            raise AuthError(
                f"PortaOne login returned status {response.status_code}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError("Failed to parse PortaOne login response") from e

        session_id = data.get("session_id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise AuthError("session_id not found in PortaOne login response")

        logger.info("portaone_login_succeeded")
        return session_id

    def list_records(
        self,
        customer_id: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[CallRecord]:
        """
        顧客の録音付き XDR 一覧を取得

        Args:
            customer_id: 顧客 ID (i_customer)
            window_start: 取得期間の開始日時
            window_end: 取得期間の終了日時

        Returns:
            CallRecord のリスト（該当なしの場合は空リスト）。
            不正な要素はログを出力してスキップされます

        Raises:
            AuthError: セッションの取得・検証に失敗した場合
            TransportError: 通信に失敗した場合
            DecodeError: レスポンス全体の構造が不正な場合
        """
        params = {
            "billing_model": 1,
            "call_recording": 1,
            "from_date": format_billing_datetime(window_start),
            "to_date": format_billing_datetime(window_end),
            "i_customer": _customer_param(customer_id),
        }

        response = self._authenticated_post(self.CUSTOMER_XDRS_PATH, params)
        self._raise_for_status(response, "get_customer_xdrs")

        try:
            data = response.json()
        except ValueError as e:
            raise DecodeError("Failed to parse get_customer_xdrs response") from e

        if not isinstance(data, dict):
            raise DecodeError("get_customer_xdrs response must be a JSON object")

        xdr_list = data.get("xdr_list")
        if xdr_list is None:
            return []
        if not isinstance(xdr_list, list):
            raise DecodeError(f"xdr_list must be a list, got {type(xdr_list).__name__}")

        # 不正な要素はスキップし、同じレスポンス内の他の XDR は処理を続ける
        records: List[CallRecord] = []
        skipped = 0
        for index, item in enumerate(xdr_list):
            try:
                records.append(CallRecord.from_dict(item))
            except RecordDecodeError as e:
                skipped += 1
                logger.warning(
                    "xdr_decode_skipped",
                    customer_id=customer_id,
                    index=index,
                    error=str(e)
                )

        logger.debug(
            "xdr_list_received",
            customer_id=customer_id,
            count=len(records),
            skipped=skipped
        )
        return records

    def fetch_recording(self, record_id: int) -> bytes:
        """
        通話録音の音声データをダウンロード

        Args:
            record_id: XDR 識別子 (i_xdr)

        Returns:
            音声データ（レスポンスボディそのもの）

        Raises:
            AuthError: セッションの取得・検証に失敗した場合
            TransportError: 通信に失敗した場合
            DecodeError: ボディが空の場合
        """
        response = self._authenticated_post(self.CALL_RECORDING_PATH, {"i_xdr": record_id})
        self._raise_for_status(response, "get_call_recording")

        content = response.content
        if not content:
            raise DecodeError(f"Empty recording body for i_xdr {record_id}")

        logger.debug("recording_downloaded", i_xdr=record_id, size=len(content))
        return content

    def _authenticated_post(self, path: str, params: Dict[str, Any]) -> requests.Response:
        session_id = self.session_cache.get_or_create()
        form = {
            "auth_info": json.dumps({"session_id": session_id}),
            "params": json.dumps(params),
        }
        return self._post(path, data=form)

    def _post(self, path: str, **kwargs) -> requests.Response:
        """
        リトライ付きで POST を送信

        接続エラー、タイムアウト、ゲートウェイ系ステータスの場合に
        指数バックオフで max_retries 回までリトライします。

        Raises:
            TransportError: リトライ後も通信できなかった場合
        """
        url = self.base_url + path
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = self.http.post(url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
            except requests.RequestException as e:
                raise TransportError(f"PortaOne request to {path} failed: {e}") from e
            else:
                if response.status_code not in self.RETRYABLE_STATUS_CODES:
                    return response
                if attempt == self.max_retries:
                    return response
                last_error = None

            if attempt < self.max_retries:
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning(
                    "portaone_request_retry",
                    path=path,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(last_error) if last_error else None
                )
                self._sleep(delay)

        raise TransportError(f"PortaOne request to {path} failed: {last_error}") from last_error

    def _raise_for_status(self, response: requests.Response, operation: str) -> None:
        if response.ok:
            return
        body = response.text[:500] if response.text else ""
        logger.debug(
            "portaone_error_response",
            operation=operation,
            status_code=response.status_code,
            body=body
        )
        if response.status_code in (401, 403):
            raise AuthError(
                f"PortaOne rejected session for {operation}: {response.status_code}",
                status_code=response.status_code
            )
        raise TransportError(
            f"PortaOne {operation} returned status {response.status_code}",
            status_code=response.status_code
        )


def _customer_param(customer_id: str):
    """数値の顧客 ID は整数として送信する"""
    if isinstance(customer_id, str) and customer_id.isdigit():
        return int(customer_id)
    return customer_id
