"""凭证生命周期管理。

CredentialManager 持有当前凭证（或“使用进程默认凭证”的决定），
负责首次初始化、过期判断与刷新。

并发约定：

- 刷新在一把锁内进行，同一时间只有一次委托交换。
- 进入锁之前记下代数（generation），拿到锁后若代数已变，
  说明别的调用方刚刚刷新过，直接复用结果（single-flight）。
- 凭证对象不可变，替换是一次引用赋值，读者只会看到旧的或新的完整凭证。
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import boto3
from botocore.credentials import Credentials

from bedrock_core.config.settings import settings
from bedrock_core.domain.exceptions import BusinessError, InitializationFailed
from bedrock_core.domain.models import Ambient, CredentialMode, Delegated, DelegatedCredential
from bedrock_core.infrastructure.logging.logger import logger
from bedrock_core.providers.base import IdentityBroker


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mode_from_settings(cfg=settings) -> CredentialMode:
    role = getattr(cfg, "cross_account_role_arn", None)
    if role and role.strip():
        return Delegated(role_identifier=role.strip())
    return Ambient()


class CredentialManager:
    """凭证生命周期管理器。

    - mode: 构造时确定，之后不可变。
    - ensure_ready(): 幂等初始化。
    - refresh_if_needed(force): 按需刷新委托凭证。
    - current_credentials(): 返回用于签名的 botocore Credentials。
    """

    def __init__(
        self,
        mode: CredentialMode,
        broker: IdentityBroker,
        cfg=settings,
        clock: Callable[[], datetime] = _utcnow,
        session_factory: Callable[..., object] = boto3.Session,
    ):
        self._mode = mode
        self._broker = broker
        self._settings = cfg
        self._clock = clock
        self._session_factory = session_factory
        self._margin = timedelta(seconds=getattr(cfg, "credential_refresh_margin_seconds", 300))
        self._lock = threading.Lock()
        self._ready = False
        self._generation = 0
        self._credential: Optional[DelegatedCredential] = None
        self._ambient = None

    @property
    def mode(self) -> CredentialMode:
        return self._mode

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def credential(self) -> Optional[DelegatedCredential]:
        return self._credential

    def ensure_ready(self) -> None:
        """首次调用时初始化；已初始化且未临近过期时直接返回。

        Raises:
            BrokerUnavailable: 委托时身份代理不可达。
            DelegationDenied: 代理拒绝委托（InitializationFailed 的子类）。
            InitializationFailed: 其他初始化错误。
        """

        if self._ready:
            if self._near_expiry():
                self.refresh_if_needed(False)
            return
        with self._lock:
            if self._ready:
                return
            try:
                self._initialize()
            except BusinessError:
                self._ready = False
                raise
            except Exception as e:
                self._ready = False
                logger.error("credentials.init.failed", extra={"extra": {"error": str(e)}})
                raise InitializationFailed(f"Credential initialization failed: {e}") from e

    def refresh_if_needed(self, force: bool = False) -> None:
        """按需刷新委托凭证；Ambient 模式下什么都不做。"""

        if isinstance(self._mode, Ambient):
            return
        seen = self._generation
        with self._lock:
            if self._generation != seen:
                # 等锁期间已有其他调用方完成刷新
                return
            if not (force or self._credential is None or self._near_expiry()):
                return
            logger.info(
                "credentials.refresh.start",
                extra={"extra": {"force": force, "generation": self._generation}},
            )
            try:
                self._exchange()
            except BusinessError:
                self._ready = False
                raise
            except Exception as e:
                self._ready = False
                logger.error("credentials.refresh.failed", extra={"extra": {"error": str(e)}})
                raise InitializationFailed(f"Credential refresh failed: {e}") from e
            self._ready = True
            logger.info("credentials.refresh.success", extra={"extra": {"generation": self._generation}})

    def current_credentials(self) -> Credentials:
        """返回当前可用于签名的凭证快照。"""

        if not self._ready:
            raise InitializationFailed("Credentials are not initialized", code="NOT_READY")
        if isinstance(self._mode, Delegated):
            cred = self._credential
            if cred is None:
                raise InitializationFailed("No delegated credential available", code="NOT_READY")
            return Credentials(cred.access_key, cred.secret_key, cred.session_token)
        frozen = self._ambient.get_frozen_credentials()
        return Credentials(frozen.access_key, frozen.secret_key, frozen.token)

    # ---- 内部方法（调用方需持有锁） ----

    def _initialize(self) -> None:
        logger.info("credentials.init.start", extra={"extra": {"mode": type(self._mode).__name__}})
        self._broker.who_am_i()
        if isinstance(self._mode, Delegated):
            self._exchange()
            if getattr(self._settings, "verify_assumed_identity", True):
                self._broker.who_am_i(self._credential)
        else:
            session = self._session_factory(region_name=self._settings.aws_region)
            ambient = session.get_credentials()
            if ambient is None:
                raise InitializationFailed(
                    "No ambient credentials found in the default credential chain",
                    code="NO_AMBIENT_CREDENTIALS",
                )
            self._ambient = ambient
        self._ready = True
        logger.info("credentials.init.success", extra={"extra": {"mode": type(self._mode).__name__}})

    def _exchange(self) -> None:
        credential = self._broker.assume_delegated_identity(
            self._mode.role_identifier,
            self._settings.sts_session_name,
            duration_seconds=self._settings.assume_role_duration_seconds,
        )
        self._credential = credential
        self._generation += 1

    def _near_expiry(self) -> bool:
        cred = self._credential
        if isinstance(self._mode, Ambient) or cred is None:
            return False
        return cred.expires_within(self._margin, self._clock())
