import json
import logging
import threading
import time

import pika

from registration_service import config

logger = logging.getLogger("registration-service.events")

PAYMENT_ROUTING_KEY = "payment.events.#"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    """Publish one JSON event on the topic exchange. Connection errors propagate."""
    params = pika.URLParameters(rabbitmq_url)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=config.EVENT_EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(event, default=str)
        channel.basic_publish(
            exchange=config.EVENT_EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
        )
        logger.info("Published %s on %s", event.get("type"), routing_key)
    finally:
        connection.close()


def process_payment_event(body: dict, store) -> bool:
    """
    Called when the gateway side publishes PaymentCaptured for an out-of-band
    membership payment. Marks the matching pending entry verified; the client
    poll does the durable insert. Unknown transaction ids are ignored.
    """
    if body.get("type") != "PaymentCaptured":
        logger.debug("Ignoring payment event type=%s", body.get("type"))
        return False
    payload = body.get("payload", {})
    transaction_id = payload.get("transaction_id")
    if not transaction_id:
        logger.warning("PaymentCaptured event without transaction_id: %s", body)
        return False
    confirmed = store.confirm(transaction_id, payload.get("gateway_ref") or payload.get("upi_ref"))
    if confirmed:
        logger.info("Pending payment %s verified from bus event", transaction_id)
    else:
        logger.info("Bus event for unknown pending payment %s ignored", transaction_id)
    return confirmed


def _consumer_runloop(rabbitmq_url: str, store, queue_name: str = ""):
    """
    Persistent consumer loop: connects, declares exchange & queue, binds and consumes.
    Reconnects on errors with backoff.
    """
    while True:
        conn = None
        try:
            params = pika.URLParameters(rabbitmq_url)
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=config.EVENT_EXCHANGE, exchange_type="topic", durable=True)

            if queue_name:
                ch.queue_declare(queue=queue_name, durable=True, exclusive=False)
                actual_queue = queue_name
            else:
                q = ch.queue_declare(queue="", exclusive=True)
                actual_queue = q.method.queue

            ch.queue_bind(exchange=config.EVENT_EXCHANGE, queue=actual_queue, routing_key=PAYMENT_ROUTING_KEY)
            logger.info("Payment consumer bound queue=%s to %s with key=%s", actual_queue, config.EVENT_EXCHANGE, PAYMENT_ROUTING_KEY)

            def callback(ch, method, properties, body):
                try:
                    process_payment_event(json.loads(body), store)
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                except Exception:
                    logger.exception("Error processing payment event, dropping message %s", method.delivery_tag)
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

            ch.basic_qos(prefetch_count=1)
            ch.basic_consume(queue=actual_queue, on_message_callback=callback, auto_ack=False)
            ch.start_consuming()

        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("AMQP connection error in consumer: %s", e)
        except Exception:
            logger.exception("Unexpected exception in consumer loop")
        finally:
            if conn is not None and conn.is_open:
                try:
                    conn.close()
                except pika.exceptions.AMQPError:
                    logger.debug("Consumer connection already gone")

        logger.info("Payment consumer will reconnect after backoff...")
        time.sleep(3)


_consumer = None
def start_consumer(rabbitmq_url: str, store, queue_name: str = ""):
    global _consumer
    if _consumer is None:
        _consumer = threading.Thread(target=_consumer_runloop, args=(rabbitmq_url, store, queue_name), daemon=True)
        _consumer.start()
