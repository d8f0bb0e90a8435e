"""
This module provides communication clients for the external collaborators of the marketplace service:
- Data Store (PostgREST-style REST API)
- Object Storage (REST API, product images)
- Payment Function (REST API wrapping the payment processor's checkout sessions)
- Payment Events (RabbitMQ consumer for checkout outcomes)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import os
import time
import uuid
from decimal import Decimal
from typing import Callable, Optional

import httpx
import pika
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

# Service addresses (normally from env vars)
DATA_STORE_URL = os.environ.get("DATA_STORE_URL", "")
DATA_STORE_KEY = os.environ.get("DATA_STORE_KEY", "")
STORAGE_URL = os.environ.get("STORAGE_URL", DATA_STORE_URL or "http://localhost:54321")
STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "product-images")
PAYMENT_FUNCTION_URL = os.environ.get("PAYMENT_FUNCTION_URL", "http://payment_service:8001")
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "marketplace")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "marketplace")
PAYMENT_EVENTS_QUEUE = os.environ.get("PAYMENT_EVENTS_QUEUE", "payments.events")
UPSTREAM_READ_RETRIES = int(os.environ.get("UPSTREAM_READ_RETRIES", "3"))
RETRY_BACKOFF_SECONDS = 0.2

log = logging.getLogger(__name__)


def _auth_headers(key: str) -> dict:
    if not key:
        return {}
    return {"apikey": key, "Authorization": f"Bearer {key}"}


def _json(response: httpx.Response):
    """Decodes a JSON body keeping numeric columns exact."""
    if not response.content:
        return None
    return json.loads(response.text, parse_float=Decimal)


def _is_server_side(exc: BaseException) -> bool:
    """Transport failures and 5xx answers are worth another read, 4xx answers are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def _eq(value) -> str:
    """PostgREST equality filter. None becomes an IS NULL filter."""
    if value is None:
        return "is.null"
    return f"eq.{value}"


# --- Data Store Client (REST) ---
class DataStoreClient:
    """
    Client for the data store's auto-generated REST API.
    Reads are retried on transport errors and 5xx answers, writes never are.
    """
    def __init__(self, base_url: str = DATA_STORE_URL, api_key: str = DATA_STORE_KEY,
                 transport: Optional[httpx.BaseTransport] = None,
                 read_retries: int = UPSTREAM_READ_RETRIES):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            base_url (str): Root URL of the data store, e.g. "https://xyz.example.co".
            api_key (str): Service key sent as `apikey` and bearer token.
            transport (httpx.BaseTransport): Optional transport override (tests).
            read_retries (int): How many extra attempts a failed read gets.
        """
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.read_retries = read_retries
        self.client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            timeout=timeout_config,
            headers=_auth_headers(api_key),
            transport=transport,
        )

    def close(self):
        self.client.close()

    def select(self, table: str, filters: Optional[dict] = None, columns: str = "*",
               order: Optional[str] = None, limit: Optional[int] = None) -> list:
        """
        Reads rows from a table.

        Args:
            table (str): Table or view name.
            filters (dict): Column -> PostgREST filter expression, e.g. {"id": "eq.42"}.
            columns (str): Select list, may include embedded relations.
            order (str): Ordering, e.g. "sort_order.asc".
            limit (int): Max number of rows.
        Returns:
            list: Rows as dicts.
        Raises:
            httpx.HTTPError: If every attempt failed.
        """
        params = {"select": columns, **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)

        def log_retry(retry_state):
            log.warning(f"Data store read on '{table}' failed ({retry_state.outcome.exception()}). "
                        f"Retry {retry_state.attempt_number}/{self.read_retries}.")

        retrying = Retrying(
            retry=retry_if_exception(_is_server_side),
            stop=stop_after_attempt(self.read_retries + 1),
            wait=wait_exponential_jitter(initial=RETRY_BACKOFF_SECONDS, max=2.0, jitter=RETRY_BACKOFF_SECONDS),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self.client.get(f"/{table}", params=params)
                    response.raise_for_status()
        except httpx.HTTPError as e:
            log.error(f"Data store read on '{table}' failed: {e}")
            raise
        return _json(response)

    def insert(self, table: str, rows) -> list:
        response = self.client.post(
            f"/{table}", json=rows, headers={"Prefer": "return=representation"}
        )
        response.raise_for_status()
        return _json(response)

    def update(self, table: str, values: dict, filters: dict) -> list:
        response = self.client.patch(
            f"/{table}", params=filters, json=values, headers={"Prefer": "return=representation"}
        )
        response.raise_for_status()
        return _json(response)

    def upsert(self, table: str, row: dict, on_conflict: str) -> list:
        response = self.client.post(
            f"/{table}",
            params={"on_conflict": on_conflict},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        response.raise_for_status()
        return _json(response)

    def delete(self, table: str, filters: dict) -> None:
        response = self.client.delete(f"/{table}", params=filters)
        response.raise_for_status()

    def rpc(self, function: str, params: dict):
        """Calls a server-side function. Used for every operation that must be atomic."""
        response = self.client.post(f"/rpc/{function}", json=params)
        response.raise_for_status()
        return _json(response)


# --- Storage Client (REST) ---
class StorageClient:
    """
    Client for the object storage collaborator.
    Uploads product images into a public bucket and returns their public URL.
    """
    def __init__(self, base_url: str = STORAGE_URL, api_key: str = DATA_STORE_KEY,
                 bucket: str = STORAGE_BUCKET, transport: Optional[httpx.BaseTransport] = None):
        timeout_config = httpx.Timeout(5.0, read=30.0)
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.client = httpx.Client(
            base_url=f"{self.base_url}/storage/v1",
            timeout=timeout_config,
            headers=_auth_headers(api_key),
            transport=transport,
        )

    def close(self):
        self.client.close()

    def upload(self, owner_id: str, filename: str, content: bytes, content_type: str) -> str:
        """
        Uploads a file under the owner's folder.

        Args:
            owner_id (str): Producer id, used as top-level folder.
            filename (str): Original file name, only its extension is kept.
            content (bytes): File body.
            content_type (str): MIME type.
        Returns:
            str: Public URL of the stored object.
        Raises:
            httpx.HTTPError: If the upload fails.
        """
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
        path = f"{owner_id}/{uuid.uuid4()}.{extension}"
        try:
            response = self.client.post(
                f"/object/{self.bucket}/{path}",
                content=content,
                headers={"Content-Type": content_type},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error(f"[Storage] Upload of {filename} for {owner_id} failed: {e}")
            raise
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"


# --- Payment Client (REST) ---
class PaymentClient:
    """
    Client for the payment function.
    Creates checkout sessions at the payment processor and returns the redirect URL.
    """
    def __init__(self, base_url: str = PAYMENT_FUNCTION_URL, api_key: str = DATA_STORE_KEY,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initializes the HTTP client with proper timeout configuration.
        """
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.client = httpx.Client(
            base_url=base_url,
            timeout=timeout_config,
            headers=_auth_headers(api_key),
            transport=transport,
        )

    def close(self):
        self.client.close()

    def create_checkout_session(self, line_items: list, success_url: str, cancel_url: str,
                                metadata: dict, idempotency_key: str) -> str:
        """
        Creates a new checkout session via the payment function.
        Args:
            line_items (list): Items with 'name', 'unitAmount' (minor units), 'quantity', 'currency'.
            success_url (str): Return URL after successful payment.
            cancel_url (str): Return URL after cancelled payment.
            metadata (dict): String key/values stored with the session (order id, commission).
            idempotency_key (str): Key that makes repeated calls for one order create one session.
        Returns:
            str: Redirect URL of the hosted checkout page.
        Raises:
            httpx.ReadTimeout: If the service does not respond within the timeout.
            httpx.HTTPStatusError: If the service returns an error status (4xx or 5xx).
        """
        order_id = metadata.get("order_id", "?")
        payload = {
            "lineItems": line_items,
            "successUrl": success_url,
            "cancelUrl": cancel_url,
            "metadata": metadata,
        }
        headers = {"Idempotency-Key": idempotency_key}

        try:
            response = self.client.post("/create-payment", json=payload, headers=headers)
            response.raise_for_status()
            return response.json()["url"]
        except httpx.ReadTimeout:
            # Session may exist. The idempotency key makes a retry safe.
            log.error(f"[Order: {order_id}] Payment function timeout (ReadTimeout). Session state unknown.")
            raise
        except httpx.HTTPStatusError as e:
            log.error(f"[Order: {order_id}] HTTP error from payment function: {e}")
            raise


# --- Payment Events Listener (MQ Consumer) ---
def start_payment_event_listener(handle_event: Callable[[dict], None]):
    """
    Listens for checkout outcomes published by the payment collaborator.

    The listener consumes messages from the payment-events queue, parses them
    as JSON and hands them to `handle_event`. Valid messages are acknowledged,
    unparseable ones are rejected without requeue (dead-letter). On connection
    loss it reconnects after 10 seconds.

    Args:
        handle_event (Callable[[dict], None]): Reconciliation callback.
    """
    log.info("Payment events listener thread starting...")
    while True:
        try:
            credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
            connection = pika.BlockingConnection(
                pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials)
            )
            channel = connection.channel()
            channel.queue_declare(queue=PAYMENT_EVENTS_QUEUE, durable=True)

            def callback(ch, method, properties, body):
                try:
                    data = json.loads(body)
                except json.JSONDecodeError:
                    log.error(f"[PAYMENT-EVENTS] Invalid JSON message received: {body!r}")
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return
                order_id = data.get("orderId", "UNKNOWN")
                log.info(f"[PAYMENT-EVENTS][Order: {order_id}] Outcome: {data.get('status')}")
                try:
                    handle_event(data)
                except Exception as e:
                    log.error(f"[PAYMENT-EVENTS][Order: {order_id}] Reconciliation failed: {e}", exc_info=True)
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return
                ch.basic_ack(delivery_tag=method.delivery_tag)

            log.info("[PAYMENT-EVENTS] Listener is active.")
            channel.basic_consume(queue=PAYMENT_EVENTS_QUEUE, on_message_callback=callback)
            channel.start_consuming()

        except pika.exceptions.AMQPConnectionError:
            log.warning("Payment events listener: lost connection to RabbitMQ. Reconnecting in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"Payment events listener: critical error. {e}. Restarting in 10s.")
            time.sleep(10)
