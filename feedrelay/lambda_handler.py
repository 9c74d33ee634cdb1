"""Lambda handlers for Telegram Feed Relay."""

import base64
import json
import os
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .commands import CommandHandler
from .config import Config, ConfigurationError
from .dedup import Deduplicator
from .engine import FeedEngine
from .logging_config import create_execution_logger, setup_structured_logging
from .rss import FeedProcessor
from .store import KeyValueStore, SubscriptionRepository
from .telegram import TelegramPublisher

# Setup structured logging
setup_structured_logging(os.getenv("LOG_LEVEL", "INFO"))

METRICS_NAMESPACE = "Telegram-Feed-Relay"


def scheduled_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Scheduled (EventBridge) handler: poll every subscribed feed once.

    Args:
        event: Lambda event data
        context: Lambda context object

    Returns:
        Response dictionary with status and metrics
    """
    execution_id = f"lambda_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)

    main_logger.log_execution_start(
        lambda_request_id=getattr(context, "aws_request_id", "unknown"),
        lambda_function_name=getattr(context, "function_name", "unknown"),
    )

    try:
        config = Config()
        telegram_config = config.get_telegram_config(
            get_telegram_token(config, execution_id)
        )
    except (ConfigurationError, ValueError, RuntimeError) as e:
        error_msg = f"CRITICAL: configuration error, run aborted: {e}"
        main_logger.error(error_msg, error=str(e))
        main_logger.log_execution_end(success=False, error=error_msg)
        return _response(
            500,
            {
                "message": "Telegram Feed Relay run aborted",
                "execution_id": execution_id,
                "error": error_msg,
            },
        )

    try:
        engine_config = config.get_engine_config()
        store = KeyValueStore(
            config.dynamodb_table, config.aws_region, execution_id=execution_id
        )
        engine = FeedEngine(
            repository=SubscriptionRepository(store),
            deduplicator=Deduplicator(
                store,
                history_limit=engine_config.sent_history_limit,
                execution_id=execution_id,
            ),
            feed_processor=FeedProcessor(
                timeout=engine_config.feed_timeout, execution_id=execution_id
            ),
            publisher=TelegramPublisher(telegram_config, execution_id=execution_id),
            max_sends_per_run=engine_config.max_sends_per_run,
            execution_id=execution_id,
        )

        metrics = engine.run()

        main_logger.log_metrics(metrics)
        send_cloudwatch_metrics(metrics, config.aws_region, execution_id)
        main_logger.log_execution_end(success=True, metrics=metrics)

        return _response(
            200,
            {
                "message": "Telegram Feed Relay run completed",
                "execution_id": execution_id,
                "metrics": metrics,
            },
        )

    except Exception as e:
        error_msg = f"Critical error in scheduled handler: {str(e)}"
        main_logger.exception(error_msg, error=str(e))
        main_logger.log_execution_end(success=False, error=error_msg)

        return _response(
            500,
            {
                "message": "Telegram Feed Relay run failed",
                "execution_id": execution_id,
                "error": error_msg,
            },
        )


def webhook_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Webhook handler for Telegram updates (API Gateway or Function URL).

    Args:
        event: HTTP event carrying the Telegram update as JSON body
        context: Lambda context object

    Returns:
        HTTP response dictionary
    """
    execution_id = f"webhook_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)

    method = (
        event.get("requestContext", {}).get("http", {}).get("method")
        or event.get("httpMethod")
        or ""
    )
    if method.upper() != "POST":
        return {"statusCode": 405, "body": "Method not allowed"}

    try:
        config = Config()
        telegram_config = config.get_telegram_config(
            get_telegram_token(config, execution_id)
        )
    except (ConfigurationError, ValueError, RuntimeError) as e:
        main_logger.error(
            f"CRITICAL: configuration error in webhook: {e}", error=str(e)
        )
        return {"statusCode": 500, "body": "Internal Server Error: Configuration Missing"}

    try:
        body = event.get("body") or ""
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body).decode("utf-8")
        update = json.loads(body)

        store = KeyValueStore(
            config.dynamodb_table, config.aws_region, execution_id=execution_id
        )
        handler = CommandHandler(
            SubscriptionRepository(store),
            TelegramPublisher(telegram_config, execution_id=execution_id),
            rss_base_url=config.rss_base_url,
            execution_id=execution_id,
        )
        handler.handle_update(update)

    except Exception as e:
        main_logger.exception(f"Error handling webhook update: {e}", error=str(e))
        return {"statusCode": 500, "body": "Error"}

    return {"statusCode": 200, "body": "OK"}


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {"statusCode": status_code, "body": json.dumps(body)}


def get_telegram_token(config: Config, execution_id: str) -> str:
    """
    Resolve the Telegram bot token.

    The TELEGRAM_BOT_TOKEN environment variable wins; otherwise the token is
    read from AWS Secrets Manager, as a plain string or a JSON object.

    Args:
        config: Loaded configuration
        execution_id: Execution ID for logging context

    Returns:
        Telegram bot token

    Raises:
        ConfigurationError: If no token can be found
        RuntimeError: If the secret cannot be retrieved or parsed
    """
    if config.telegram_bot_token:
        return config.telegram_bot_token

    secrets_logger = create_execution_logger("secrets_manager", execution_id)
    secret_name = config.telegram_secret_name

    if not secret_name or not secret_name.strip():
        raise ConfigurationError(
            "TELEGRAM_BOT_TOKEN is missing and no secret name is configured"
        )

    try:
        secrets_logger.info(
            f"Retrieving Telegram token from Secrets Manager: {secret_name}"
        )
        secrets_client = boto3.client("secretsmanager", region_name=config.aws_region)
        response = secrets_client.get_secret_value(SecretId=secret_name)
        secret_value = (response.get("SecretString") or "").strip()
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        secrets_logger.error(
            f"AWS Secrets Manager error retrieving {secret_name}: {error_code}"
        )
        raise RuntimeError(f"Failed to retrieve secret {secret_name}") from e
    except BotoCoreError as e:
        secrets_logger.error(
            f"Could not reach Secrets Manager for {secret_name}: {type(e).__name__}"
        )
        raise RuntimeError(f"Failed to retrieve secret {secret_name}") from e

    if not secret_value:
        raise ConfigurationError(f"Secret {secret_name} contains empty value")

    try:
        secret_data = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value

    if not isinstance(secret_data, dict):
        raise RuntimeError(f"JSON secret {secret_name} must be an object")

    for key in ["token", "bot_token", "telegram_token", "telegram_bot_token"]:
        value = secret_data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    raise ConfigurationError(f"No bot token found in JSON secret {secret_name}")


def send_cloudwatch_metrics(
    metrics: dict[str, Any], aws_region: str, execution_id: str
) -> None:
    """
    Send custom run metrics to CloudWatch.

    Args:
        metrics: Dictionary containing run metrics
        aws_region: AWS region for CloudWatch client
        execution_id: Execution ID for logging context
    """
    metrics_logger = create_execution_logger("cloudwatch_metrics", execution_id)

    try:
        cloudwatch = boto3.client("cloudwatch", region_name=aws_region)

        counters = [
            ("FeedsChecked", metrics["feeds_checked"]),
            ("FeedsFailed", metrics["feeds_failed"]),
            ("ItemsFound", metrics["items_found"]),
            ("ItemsNew", metrics["items_new"]),
            ("MessagesSent", metrics["messages_sent"]),
            ("SendFailures", metrics["send_failures"]),
            ("BudgetExhausted", 1 if metrics["budget_exhausted"] else 0),
            ("Errors", len(metrics["errors"])),
        ]
        metric_data = [
            {
                "MetricName": name,
                "Value": value,
                "Unit": "Count",
                "Dimensions": [{"Name": "ExecutionId", "Value": execution_id}],
            }
            for name, value in counters
        ]

        # CloudWatch accepts at most 20 metrics per call
        batch_size = 20
        for i in range(0, len(metric_data), batch_size):
            batch = metric_data[i : i + batch_size]
            cloudwatch.put_metric_data(Namespace=METRICS_NAMESPACE, MetricData=batch)

        metrics_logger.info(
            "Successfully sent metrics to CloudWatch",
            metrics_sent=len(metric_data),
            namespace=METRICS_NAMESPACE,
        )

    except Exception as e:
        metrics_logger.error(f"Failed to send CloudWatch metrics: {e}", error=str(e))
