"""
セッションキャッシュモジュール (Session Cache Module)

PortaOne のセッション ID を Redis に TTL 付きで保存し、
有効期限内はログインせずに再利用します。
"""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

import redis

from .config import Config
from .logging_setup import get_logger
from .models import SESSION_LEASE, Session


logger = get_logger(__name__)


class CacheError(Exception):
    """
    キャッシュストアエラー

    Redis に接続できない場合など、キャッシュストアの操作に失敗したことを表します。
    呼び出し側ではキャッシュミスとして扱います。
    """
    pass


def create_redis_client(config: Config) -> redis.Redis:
    """
    設定から Redis クライアントを作成

    Args:
        config: アプリケーション設定

    Returns:
        Redis クライアント
    """
    return redis.Redis(
        host=config.redis_host,
        port=config.redis_port,
        password=config.redis_password,
        db=config.redis_db,
        socket_timeout=5,
        socket_connect_timeout=5,
        decode_responses=True,
    )


class SessionCache:
    """
    PortaOne セッションの TTL キャッシュ

    固定キー portaone_session_id にセッション ID を保存します。
    期限切れの判定は Redis の TTL に任せ、次回アクセス時に遅延して検出します。
    ログインは同一プロセス内で同時に1件のみ実行され、
    待機していた呼び出し元はその結果を再利用します。

    Attributes:
        store: Redis 互換のキーバリューストア (get / set(ex=) を持つもの)
        login: ログインを行いセッション ID を返す関数
        lease: セッションの有効期間
    """

    SESSION_KEY = "portaone_session_id"

    def __init__(
        self,
        store,
        login: Callable[[], str],
        lease=SESSION_LEASE,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        SessionCache を初期化

        Args:
            store: Redis クライアント
            login: 課金サービスへのログイン関数
            lease: セッションの有効期間 (デフォルト: 25分)
            clock: 現在時刻を返す関数（テスト用）
        """
        self.store = store
        self.login = login
        self.lease = lease
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._session: Optional[Session] = None

    def get_or_create(self) -> str:
        """
        キャッシュ済みのセッション ID を取得し、なければログインして作成

        Returns:
            セッション ID

        Raises:
            AuthError: ログインに失敗した場合
        """
        token, store_ok = self._read()
        if token:
            return token

        with self._lock:
            # 待機中に他のスレッドがログインを済ませている可能性がある
            token, store_ok = self._read()
            if token:
                return token

            if not store_ok and self._session and self._session.is_alive(self._clock()):
                logger.info("session_reused_from_memory", reason="cache_unavailable")
                return self._session.token

            logger.info("session_not_cached", action="login")
            token = self.login()
            self._session = Session(token=token, created_at=self._clock(), lease=self.lease)
            self._write(token)
            return token

    def _read(self) -> Tuple[Optional[str], bool]:
        """
        キャッシュからセッション ID を読み込む

        Returns:
            (セッション ID または None, ストアが応答したか) のタプル
        """
        try:
            value = self._get()
        except CacheError as e:
            logger.warning("session_cache_read_failed", error=str(e))
            return None, False

        if isinstance(value, bytes):
            value = value.decode("utf-8")
        if value:
            logger.debug("session_cache_hit", key=self.SESSION_KEY)
            return value, True
        return None, True

    def _get(self):
        try:
            return self.store.get(self.SESSION_KEY)
        except redis.RedisError as e:
            raise CacheError(f"Failed to read session from cache: {e}") from e

    def _write(self, token: str) -> None:
        ttl_seconds = int(self.lease.total_seconds())
        try:
            self.store.set(self.SESSION_KEY, token, ex=ttl_seconds)
        except redis.RedisError as e:
            # 保存に失敗してもトークン自体は有効なので呼び出し元へ返す
            logger.warning("session_cache_write_failed", key=self.SESSION_KEY, error=str(e))
            return
        logger.info("session_cached", key=self.SESSION_KEY, ttl_seconds=ttl_seconds)
