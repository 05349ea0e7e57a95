"""
LogWarden MQTT Client Module

Secure MQTT client wrapper (TLS, authentication, reconnection) and the
cluster publisher that shares block and allow changes with peer nodes.
"""

import json
import socket
import ssl
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Optional

import paho.mqtt.client as mqtt

from logwarden.modules.firewall import SCOPES
from logwarden.modules.logging_utils import get_logger


class SecureMQTTClient:
    """
    Secure MQTT client with TLS encryption and authentication.

    Handles connection, reconnection, message publishing/subscribing with
    proper error handling and logging.
    """

    def __init__(
        self,
        client_id: str,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ca_cert_path: Optional[str] = None
    ):
        """
        Initialize secure MQTT client.

        Args:
            client_id: Unique client identifier
            broker_host: MQTT broker hostname/IP
            broker_port: MQTT broker port (8883 for TLS)
            username: MQTT username
            password: MQTT password
            ca_cert_path: Path to CA certificate for TLS
        """
        self.client_id = client_id
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.username = username
        self.password = password
        self.ca_cert_path = ca_cert_path

        self.logger = get_logger(f"mqtt.{client_id}")

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311
        )

        if username and password:
            self.client.username_pw_set(username, password)

        # TLS only when a CA certificate is configured
        if ca_cert_path:
            try:
                self.client.tls_set(
                    ca_certs=ca_cert_path,
                    cert_reqs=ssl.CERT_REQUIRED,
                    tls_version=ssl.PROTOCOL_TLSv1_2
                )
                self.logger.info("TLS configured", ca_cert=ca_cert_path)
            except (OSError, ValueError) as e:
                self.logger.error(f"Failed to configure TLS: {e}")
                raise
        else:
            self.logger.info("TLS disabled - using unencrypted connection")

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.on_publish = self._on_publish

        # Subscription callbacks
        self._message_callbacks: Dict[str, Callable] = {}

        self.connected = False

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Callback when client connects to broker."""
        if not reason_code.is_failure:
            self.connected = True
            self.logger.info(
                "Connected to MQTT broker",
                broker=self.broker_host,
                port=self.broker_port
            )
            # Re-establish subscriptions after a reconnect
            for topic in self._message_callbacks:
                client.subscribe(topic, qos=1)
        else:
            self.connected = False
            self.logger.error(f"Connection failed: {reason_code}", reason_code=str(reason_code))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """Callback when client disconnects from broker."""
        self.connected = False
        if not reason_code.is_failure:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Unexpected disconnection from MQTT broker",
                reason_code=str(reason_code)
            )

    def _on_message(self, client, userdata, msg):
        """Callback when message is received."""
        topic = msg.topic
        payload = msg.payload.decode('utf-8', errors='ignore')

        self.logger.debug("Message received", topic=topic, qos=msg.qos)

        for topic_pattern, callback in self._message_callbacks.items():
            if mqtt.topic_matches_sub(topic_pattern, topic):
                try:
                    callback(topic, payload)
                except Exception as e:
                    self.logger.error(
                        f"Error in message callback: {e}",
                        topic=topic,
                        callback=callback.__name__
                    )

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        """Callback when message is published."""
        self.logger.debug("Message published", message_id=mid)

    def connect(self, retry: bool = True, retry_interval: int = 5, max_retries: int = 10) -> bool:
        """
        Connect to MQTT broker with optional retry logic.

        Args:
            retry: Whether to retry on connection failure
            retry_interval: Seconds between retry attempts
            max_retries: Maximum number of retry attempts (-1 for infinite)

        Returns:
            bool: True if connected successfully
        """
        attempts = 0
        while True:
            try:
                self.logger.info(
                    "Connecting to MQTT broker...",
                    broker=self.broker_host,
                    port=self.broker_port
                )
                self.client.connect(self.broker_host, self.broker_port, keepalive=60)
                self.client.loop_start()

                # Wait for connection to establish
                timeout = 10
                while not self.connected and timeout > 0:
                    time.sleep(0.5)
                    timeout -= 0.5

                if self.connected:
                    return True
                else:
                    self.client.loop_stop()
                    raise ConnectionError("Connection timeout")

            except (OSError, ConnectionError) as e:
                attempts += 1
                self.logger.error(
                    f"Connection attempt {attempts} failed: {e}",
                    broker=self.broker_host
                )

                if not retry or (max_retries != -1 and attempts >= max_retries):
                    self.logger.critical("Max connection retries reached")
                    return False

                self.logger.info(f"Retrying in {retry_interval} seconds...")
                time.sleep(retry_interval)

    def disconnect(self):
        """Disconnect from MQTT broker."""
        self.logger.info("Disconnecting from MQTT broker")
        self.client.disconnect()
        self.client.loop_stop()

    def publish(self, topic: str, payload: str, qos: int = 1, retain: bool = False) -> bool:
        """
        Publish message to MQTT topic.

        Returns:
            bool: True if the message was handed to the client
        """
        if not self.connected:
            self.logger.warning("Cannot publish: not connected to broker", topic=topic)
            return False

        try:
            result = self.client.publish(topic, payload, qos=qos, retain=retain)
        except (OSError, ValueError) as e:
            self.logger.error(f"Exception during publish: {e}", topic=topic)
            return False

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            self.logger.debug("Published message", topic=topic, qos=qos)
            return True
        self.logger.error("Publish failed", topic=topic, return_code=result.rc)
        return False

    def subscribe(self, topic: str, callback: Callable[[str, str], None], qos: int = 1) -> bool:
        """
        Subscribe to MQTT topic with callback.

        Args:
            topic: MQTT topic (supports wildcards + and #)
            callback: Function to call when message received (topic, payload)
            qos: Quality of Service (0, 1, or 2)
        """
        self._message_callbacks[topic] = callback
        if not self.connected:
            # Subscribed from _on_connect once the connection is up
            return False

        result, mid = self.client.subscribe(topic, qos=qos)
        if result == mqtt.MQTT_ERR_SUCCESS:
            self.logger.info("Subscribed to topic", topic=topic, qos=qos)
            return True
        self.logger.error("Subscribe failed", topic=topic, return_code=result)
        return False


CLUSTER_KINDS = ("block", "unblock", "allow", "unallow")


@dataclass(frozen=True)
class ClusterEvent:
    """A rule change shared with the other nodes of the cluster."""
    kind: str
    address: str
    scope: str = "inout"
    duration: int = 0
    comment: str = ""
    origin: str = field(default_factory=socket.gethostname)
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, payload: str) -> "ClusterEvent":
        """
        Raises:
            ValueError: if the payload is not a valid cluster event
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid cluster payload: {e}")
        if not isinstance(data, dict) or data.get("kind") not in CLUSTER_KINDS or not data.get("address"):
            raise ValueError("cluster payload lacks a known kind or an address")
        scope = data.get("scope", "inout")
        if scope not in SCOPES:
            raise ValueError(f"cluster payload has an unknown scope [{scope}]")
        try:
            duration = int(data.get("duration", 0))
            timestamp = float(data.get("timestamp", 0.0))
        except (TypeError, ValueError):
            raise ValueError("cluster payload duration and timestamp must be numbers")
        if duration < 0:
            raise ValueError(f"cluster payload has a negative duration [{duration}]")
        return cls(
            kind=data["kind"],
            address=str(data["address"]),
            scope=scope,
            duration=duration,
            comment=str(data.get("comment", "")),
            origin=str(data.get("origin", "")),
            timestamp=timestamp,
        )


class ClusterPublisher:
    """
    Publish rule changes to ``<prefix>/<kind>`` and receive those of peers.

    Publishing never raises; failures are logged and the change stays local.
    """

    def __init__(self, client: SecureMQTTClient, topic_prefix: str = "logwarden/cluster",
                 node_name: Optional[str] = None):
        self.client = client
        self.topic_prefix = topic_prefix.rstrip("/")
        self.node_name = node_name or socket.gethostname()

    @classmethod
    def from_config(cls, config) -> "ClusterPublisher":
        node_name = socket.gethostname()
        client = SecureMQTTClient(
            client_id=f"logwarden-{node_name}",
            broker_host=config.cluster_broker_host,
            broker_port=config.cluster_broker_port,
            username=config.cluster_username,
            password=config.cluster_password,
            ca_cert_path=config.cluster_ca_cert,
        )
        return cls(client, config.cluster_topic_prefix, node_name)

    def topic_for(self, kind: str) -> str:
        return f"{self.topic_prefix}/{kind}"

    def publish(self, event: ClusterEvent) -> bool:
        return self.client.publish(self.topic_for(event.kind), event.to_json())

    def publish_entry(self, entry, removed: bool = False) -> bool:
        """Publish the cluster event for a temporary store change."""
        if entry.kind == "deny":
            kind = "unblock" if removed else "block"
        else:
            kind = "unallow" if removed else "allow"
        return self.publish(ClusterEvent(
            kind=kind,
            address=entry.address,
            scope=entry.scope,
            duration=entry.duration,
            comment=entry.comment,
            origin=self.node_name,
        ))

    def listen(self, handler: Callable[[ClusterEvent], None]) -> bool:
        """Deliver events published by other nodes to ``handler``."""
        def on_message(topic: str, payload: str):
            try:
                event = ClusterEvent.from_json(payload)
            except ValueError as e:
                self.client.logger.warning("Ignoring malformed cluster event", topic=topic, error=str(e))
                return
            if event.origin == self.node_name:
                return
            handler(event)

        return self.client.subscribe(f"{self.topic_prefix}/#", on_message)

    def start(self) -> bool:
        return self.client.connect(retry=False)

    def stop(self):
        self.client.disconnect()
