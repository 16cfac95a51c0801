import logging
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
)

from aws_cpi.config import Settings
from aws_cpi.errors import EndpointUnreachable, ProviderError


logger = logging.getLogger(__name__)


RATE_LIMIT_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
}

NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidVolume.NotFound",
    "InvalidSnapshot.NotFound",
    "InvalidAMIID.NotFound",
    "InvalidAttachment.NotFound",
    "InvalidAllocationID.NotFound",
    "ResourceNotFound",
}


def error_code(exc: BaseException) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_rate_limited(exc: BaseException) -> bool:
    return error_code(exc) in RATE_LIMIT_CODES


def is_not_found(exc: BaseException) -> bool:
    code = error_code(exc)
    return code in NOT_FOUND_CODES or bool(code and code.endswith(".NotFound"))


def provider_error(exc: ClientError) -> ProviderError:
    error = exc.response.get("Error", {})
    return ProviderError(
        operation=exc.operation_name,
        code=error.get("Code", "Unknown"),
        detail=error.get("Message", str(exc)),
    )


@dataclass
class ProviderContext:
    ec2: Any
    elbv2: Any
    elb: Any
    region: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderContext":
        settings.validate_provider()
        session_kwargs: dict[str, Any] = {"region_name": settings.region}
        if settings.credentials_source == "static":
            session_kwargs.update(
                aws_access_key_id=settings.access_key_id,
                aws_secret_access_key=settings.secret_access_key,
                aws_session_token=settings.session_token,
            )
        session = boto3.session.Session(**session_kwargs)
        config = Config(
            retries={"max_attempts": settings.max_retries, "mode": "standard"}
        )
        return cls(
            ec2=session.client(
                "ec2", endpoint_url=settings.ec2_endpoint, config=config
            ),
            elbv2=session.client(
                "elbv2", endpoint_url=settings.elb_endpoint, config=config
            ),
            elb=session.client(
                "elb", endpoint_url=settings.elb_endpoint, config=config
            ),
            region=settings.region,
        )

    def alb_accessible(self) -> None:
        self._probe("elbv2", lambda: self.elbv2.describe_load_balancers(PageSize=1))

    def elb_accessible(self) -> None:
        self._probe("elb", lambda: self.elb.describe_load_balancers(PageSize=1))

    def _probe(self, service: str, call) -> None:
        try:
            call()
        except (EndpointConnectionError, ConnectTimeoutError) as exc:
            logger.error("endpoint probe failed service=%s error=%s", service, exc)
            raise EndpointUnreachable(service, str(exc)) from exc
        except ClientError as exc:
            raise provider_error(exc) from exc
