# src/spaces_backup/handler.py
"""
Invocation boundary for serverless hosts.

`main(args)` is the function entry point: it reads configuration from the
environment (with `args` taking precedence), runs one backup and always
returns a ``{"statusCode", "body"}`` record. It never raises.
"""

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from rich.logging import RichHandler

from spaces_backup.config import REQUIRED_ENV_VARS, Config, load_config
from spaces_backup.exceptions import BackupError, ConfigError, PipelineError
from spaces_backup.models import BackupResult
from spaces_backup.pipeline import BackupPipeline

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

STATUS_OK: int = 200
STATUS_CLIENT_ERROR: int = 400
STATUS_SERVER_ERROR: int = 500


def setup_logging(level: str = "INFO") -> None:
    """
    Configure rich-based logging for the application.

    Does nothing if the host already configured the root logger.

    Args:
        level (str): The root log level name.
    """
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in ["botocore", "aiobotocore", "s3transfer", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def error_response(error: BackupError, include_stack: bool = False) -> Dict[str, Any]:
    """
    Build the failure record for a classified error.

    Args:
        error (BackupError): The failure.
        include_stack (bool): Attach the traceback to the body.

    Returns:
        Dict[str, Any]: ``{"statusCode": 4xx/5xx, "body": {...}}``.
    """
    body: Dict[str, Any] = error.to_payload(include_stack=include_stack)
    if isinstance(error, ConfigError):
        body["required"] = list(REQUIRED_ENV_VARS)
    status: int = STATUS_CLIENT_ERROR if error.is_client_error else STATUS_SERVER_ERROR
    return {"statusCode": status, "body": body}


def success_response(result: BackupResult) -> Dict[str, Any]:
    return {"statusCode": STATUS_OK, "body": result.to_payload()}


async def invoke(
    env: Mapping[str, str],
    shutdown_event: Optional[asyncio.Event] = None,
    source_client: Optional["S3Client"] = None,
    dest_client: Optional["S3Client"] = None,
    include_stack: bool = False,
) -> Dict[str, Any]:
    """
    Run one backup and convert its outcome into a response record.

    Args:
        env (Mapping[str, str]): Configuration variables.
        shutdown_event (asyncio.Event, optional): Aborts the run when set.
        source_client (S3Client, optional): Injected source client.
        dest_client (S3Client, optional): Injected destination client.
        include_stack (bool): Attach tracebacks to failure bodies.

    Returns:
        Dict[str, Any]: The response record.
    """
    try:
        config: Config = load_config(env)
        pipeline: BackupPipeline = BackupPipeline(
            config,
            shutdown_event=shutdown_event,
            source_client=source_client,
            dest_client=dest_client,
        )
        result: BackupResult = await pipeline.run()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return error_response(e, include_stack)
    except BackupError as e:
        logger.error(f"Backup failed ({e.kind}): {e}")
        return error_response(e, include_stack)
    except Exception as e:
        logger.exception("Backup failed with an unexpected error")
        wrapped: PipelineError = PipelineError(f"Unexpected error: {e}")
        wrapped.__cause__ = e
        return error_response(wrapped, include_stack)
    return success_response(result)


def _merge_args(args: Mapping[str, Any]) -> Dict[str, str]:
    env: Dict[str, str] = dict(os.environ)
    for name, value in args.items():
        if name.isupper() and value is not None:
            env[name] = str(value)
    return env


def main(args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Function entry point.

    Upper-case keys in `args` override environment variables of the same
    name. ``include_stack`` adds tracebacks to failure bodies.

    Args:
        args (Dict[str, Any], optional): Invocation parameters.

    Returns:
        Dict[str, Any]: ``{"statusCode": int, "body": dict}``.
    """
    args = dict(args or {})
    include_stack: bool = bool(args.pop("include_stack", False))
    env: Dict[str, str] = _merge_args(args)
    try:
        setup_logging(env.get("LOG_LEVEL", "INFO"))
        return asyncio.run(invoke(env, include_stack=include_stack))
    except Exception as e:
        logger.exception("Backup invocation failed")
        wrapped: PipelineError = PipelineError(f"Invocation failed: {e}")
        wrapped.__cause__ = e
        return error_response(wrapped, include_stack)
