"""
mock_payment_service.py — Mock Implementation of the Payment Function (REST API + MQ)

This module provides a simulated payment collaborator for local runs of the
marketplace service. It exposes a FastAPI application that mimics the hosted
checkout-session function and, like a real processor's webhook, reports the
outcome of each session asynchronously on the payment-events queue.

Simulation Scenarios (driven by the success URL):
    • Successful payment ("?scenario=" absent)
    • Declined payment ("scenario=decline") → outcome "failed"
    • Abandoned checkout ("scenario=expire") → outcome "expired"
    • Function error ("scenario=error") → HTTP 500, no session

Endpoints:
    POST /create-payment: Creates a checkout session and returns its URL.

Port:
    Default: 8001 (HTTP)
"""

import json
import logging
import os
import threading
import time
import uuid
from typing import Dict, List

import pika
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
PAYMENT_EVENTS_QUEUE = os.environ.get("PAYMENT_EVENTS_QUEUE", "payments.events")
OUTCOME_DELAY_SECONDS = float(os.environ.get("OUTCOME_DELAY_SECONDS", "3"))

app = FastAPI(title="Mock Payment Function")
logging.basicConfig(level=logging.INFO)

_sessions: Dict[str, str] = {}


class LineItem(BaseModel):
    name: str
    unitAmount: int = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    currency: str


class CheckoutSessionRequest(BaseModel):
    """
    Represents a checkout session request payload.

    Attributes:
        lineItems (List[LineItem]): Items with amounts in minor currency units.
        successUrl (str): Redirect after payment.
        cancelUrl (str): Redirect after cancel.
        metadata (Dict[str, str]): Stored with the session and echoed in the outcome event.
    """
    lineItems: List[LineItem]
    successUrl: str
    cancelUrl: str
    metadata: Dict[str, str] = Field(default_factory=dict)


def get_mq_connection():
    credentials = pika.PlainCredentials(
        os.environ.get("RABBITMQ_USER", "marketplace"), os.environ.get("RABBITMQ_PASSWORD", "marketplace")
    )
    return pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials))


def publish_outcome(order_id: str, session_id: str, status: str, metadata: Dict[str, str]):
    """
    Waits OUTCOME_DELAY_SECONDS, then publishes the session outcome to the payment-events queue.
    """
    time.sleep(OUTCOME_DELAY_SECONDS)
    try:
        connection = get_mq_connection()
        channel = connection.channel()
        channel.queue_declare(queue=PAYMENT_EVENTS_QUEUE, durable=True)
        message = {"orderId": order_id, "paymentReference": session_id, "status": status, "metadata": metadata}
        channel.basic_publish(
            exchange='',
            routing_key=PAYMENT_EVENTS_QUEUE,
            body=json.dumps(message),
            properties=pika.BasicProperties(delivery_mode=2)
        )
        logging.info(f"[PS] Outcome '{status}' for order {order_id} published.")
        connection.close()
    except Exception as e:
        logging.error(f"[PS] Could not publish outcome for order {order_id}: {e}")


@app.post("/create-payment")
def create_payment(
        request: CheckoutSessionRequest,
        idempotency_key: str = Header(..., alias="Idempotency-Key")
):
    """
    Creates a checkout session.

    The same Idempotency-Key always returns the same session. The outcome of a
    new session is published in a background thread.

    Returns:
        dict: {"url": <hosted checkout URL>, "sessionId": <id>}

    Raises:
        HTTPException(400): If the metadata carries no order_id.
        HTTPException(500): If the "error" scenario is requested.
    """
    order_id = request.metadata.get("order_id")
    if not order_id:
        raise HTTPException(status_code=400, detail={"errorCode": "missing_order_id"})

    total = sum(item.unitAmount * item.quantity for item in request.lineItems)
    logging.info(f"[PS] Session request for {order_id}: {total} minor units (Idempotency: {idempotency_key})")

    if "scenario=error" in request.successUrl:
        raise HTTPException(status_code=500, detail={"errorCode": "processor_error"})

    session_id = _sessions.get(idempotency_key)
    if session_id is None:
        session_id = f"cs_{uuid.uuid4().hex}"
        _sessions[idempotency_key] = session_id
        status = "succeeded"
        if "scenario=decline" in request.successUrl:
            status = "failed"
        elif "scenario=expire" in request.successUrl:
            status = "expired"
        threading.Thread(
            target=publish_outcome, args=(order_id, session_id, status, request.metadata), daemon=True
        ).start()

    return {"url": f"https://checkout.example.test/pay/{session_id}", "sessionId": session_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
