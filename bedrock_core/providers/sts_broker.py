"""身份代理适配器（AWS STS）。

负责：

1. AssumeRole：用进程默认凭证换取目标角色的临时凭证。
2. GetCallerIdentity：确认当前身份，只用于诊断日志。

本模块不做任何重试：boto3 客户端被配置为只尝试一次，
是否重试由上层（CredentialManager 的调用方）决定。
"""

from datetime import datetime, timezone
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError

from bedrock_core.config.settings import settings
from bedrock_core.domain.exceptions import BrokerUnavailable, DelegationDenied, InitializationFailed
from bedrock_core.domain.models import CallerIdentity, DelegatedCredential
from bedrock_core.infrastructure.logging.logger import logger

# 这些错误码表示代理暂时不可用，而不是拒绝
_TRANSIENT_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "ServiceUnavailable"}


class StsIdentityBroker:
    """基于 boto3 STS 的 IdentityBroker 实现。"""

    name = "sts"

    def __init__(self, cfg=settings):
        self._settings = cfg
        self._client_config = Config(
            region_name=cfg.aws_region,
            connect_timeout=cfg.http_timeout,
            read_timeout=cfg.http_timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )

    def assume_delegated_identity(
        self,
        role_identifier: str,
        session_label: str,
        duration_seconds: int = 3600,
    ) -> DelegatedCredential:
        """换取委托凭证。

        Raises:
            DelegationDenied: 代理明确拒绝（权限策略、信任关系等）。
            BrokerUnavailable: 网络错误、超时或代理端故障。
        """

        log_ctx = {"role_arn": role_identifier, "session": session_label}
        logger.info("sts.assume_role.start", extra={"extra": log_ctx})
        try:
            resp = self._client().assume_role(
                RoleArn=role_identifier,
                RoleSessionName=session_label,
                DurationSeconds=duration_seconds,
            )
        except ClientError as e:
            raise self._map_client_error(e, log_ctx) from e
        except (NoCredentialsError, PartialCredentialsError) as e:
            logger.error("sts.assume_role.no_credentials", extra={"extra": log_ctx})
            raise InitializationFailed(
                f"No ambient credentials available to assume {role_identifier}",
                code="NO_AMBIENT_CREDENTIALS",
            ) from e
        except BotoCoreError as e:
            logger.error("sts.assume_role.unreachable", extra={"extra": {**log_ctx, "error": str(e)}})
            raise BrokerUnavailable(f"Identity broker unreachable: {e}", role_arn=role_identifier) from e

        creds = resp.get("Credentials") or {}
        try:
            credential = DelegatedCredential(
                access_key=creds["AccessKeyId"],
                secret_key=creds["SecretAccessKey"],
                session_token=creds["SessionToken"],
                expires_at=_as_utc(creds["Expiration"]),
            )
        except KeyError as e:
            raise InitializationFailed(f"AssumeRole response missing field {e}") from e
        logger.info(
            "sts.assume_role.success",
            extra={"extra": {
                **log_ctx,
                "access_key": credential.masked_access_key,
                "assumed_arn": (resp.get("AssumedRoleUser") or {}).get("Arn"),
                "expires_at": credential.expires_at.isoformat(),
            }},
        )
        return credential

    def who_am_i(self, credential: Optional[DelegatedCredential] = None) -> Optional[CallerIdentity]:
        """确认当前身份（尽力而为）。

        失败只记录警告并返回 None，不会阻塞主流程。
        """

        try:
            resp = self._client(credential).get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            logger.warning("sts.who_am_i.failed", extra={"extra": {"error": str(e)}})
            return None
        identity = CallerIdentity(
            account_id=resp.get("Account", ""),
            principal_arn=resp.get("Arn", ""),
            user_id=resp.get("UserId"),
        )
        logger.info(
            "sts.who_am_i",
            extra={"extra": {
                "account": identity.account_id,
                "arn": identity.principal_arn,
                "delegated": credential is not None,
            }},
        )
        return identity

    def _client(self, credential: Optional[DelegatedCredential] = None) -> Any:
        kwargs = {}
        if credential is not None:
            kwargs = {
                "aws_access_key_id": credential.access_key,
                "aws_secret_access_key": credential.secret_key,
                "aws_session_token": credential.session_token,
            }
        return boto3.client("sts", region_name=self._settings.aws_region, config=self._client_config, **kwargs)

    @staticmethod
    def _map_client_error(e: ClientError, log_ctx: dict) -> Exception:
        error = e.response.get("Error") or {}
        meta = e.response.get("ResponseMetadata") or {}
        code = error.get("Code", "")
        status = meta.get("HTTPStatusCode") or 0
        fields = {
            **log_ctx,
            "error_code": code,
            "status_code": status,
            "request_id": meta.get("RequestId"),
        }
        if status >= 500 or code in _TRANSIENT_CODES:
            logger.error("sts.assume_role.unavailable", extra={"extra": fields})
            return BrokerUnavailable(error.get("Message") or code or str(e), **fields)
        logger.error("sts.assume_role.denied", extra={"extra": fields})
        return DelegationDenied(error.get("Message") or code or str(e), **fields)


def _as_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
