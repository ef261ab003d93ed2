# app/services/mqtt_bridge.py
"""
Соединение с MQTT-брокером для HTTP-моста.

Один MqttConnector держит ровно один клиент paho:
  - клиент создаётся лениво при первом get_client() (ровно один раз,
    конкурентные первые вызовы ждут друг друга);
  - при потере связи on_disconnect будит поток-супервизор, который
    пересоздаёт клиент по RetryPolicy, пока не подключится или пока
    коннектор не закрыт;
  - publish() возвращает PublishResult, HTTP-слой сам решает, что отвечать.

Пример:
  connector = MqttConnector(settings)
  res = connector.publish("sensors/temp", "21.5")
  connector.close()
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from app.core.config import Settings

log = logging.getLogger("mqtt")

QOS_AT_MOST_ONCE = 0
WS_PATH = "/mqtt"

ClientFactory = Callable[[Settings], mqtt.Client]


def create_paho_client(settings: Settings) -> mqtt.Client:
    """Собрать клиент paho по настройкам (транспорт, TLS, версия протокола, логин)."""
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=settings.mqtt_client_id,
        protocol=settings.paho_protocol,
        transport=settings.transport,
    )
    if settings.transport == "websockets":
        client.ws_set_options(path=WS_PATH)
    if settings.use_tls:
        client.tls_set()
    if settings.mqtt_username:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
    return client


@dataclass(frozen=True)
class RetryPolicy:
    delay_s: float = 5.0
    max_delay_s: float = 5.0
    multiplier: float = 1.0
    max_attempts: int = 0  # 0 = без ограничения

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            delay_s=settings.reconnect_delay,
            max_delay_s=settings.reconnect_max_delay,
            multiplier=settings.reconnect_backoff,
            max_attempts=settings.reconnect_max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        """Пауза после неудачной попытки номер attempt (с 1)."""
        # показатель ограничен, иначе при вечных ретраях будет OverflowError
        exp = min(max(attempt - 1, 0), 64)
        ceiling = max(self.max_delay_s, self.delay_s)
        return min(self.delay_s * (self.multiplier ** exp), ceiling)


@dataclass(frozen=True)
class PublishResult:
    ok: bool
    topic: str
    error: Optional[str] = None
    mid: Optional[int] = None


class MqttConnector:
    def __init__(
        self,
        settings: Settings,
        client_factory: Optional[ClientFactory] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.policy = retry_policy or RetryPolicy.from_settings(settings)
        self._client_factory = client_factory or create_paho_client

        self._client: Optional[mqtt.Client] = None
        self._initialized = False
        # ленивая инициализация и замена клиента
        self._init_lock = threading.RLock()
        # одна последовательность переподключения за раз
        self._reconnect_lock = threading.Lock()

        self._connected = threading.Event()
        # любой CONNACK текущей попытки, в том числе отказ
        self._connack = threading.Event()
        self._closing = threading.Event()
        self._reconnect_wanted = threading.Event()
        self._supervisor: Optional[threading.Thread] = None
        self._supervisor_lock = threading.Lock()

        # счётчики для status()
        self._handles_created = 0
        self._reconnect_attempts = 0
        self._last_error: Optional[str] = None

    # ───────── клиент ─────────
    def get_client(self) -> Optional[mqtt.Client]:
        """Общий клиент; первый вызов запускает connect() ровно один раз."""
        with self._init_lock:
            if not self._initialized:
                self._initialized = True
                self.connect()
            elif not self.is_connected() and not self._reconnect_lock.locked():
                # супервизор сдался (max_attempts) — запрос снова будит его
                self._request_reconnect()
            return self._client

    def connect(self) -> bool:
        """
        Создать клиент и синхронно подключиться (ждём CONNACK).
        Ошибку наружу не отдаём: логируем и передаём супервизору.
        """
        if self._open_connection():
            return True
        log.warning("[mqtt] initial connect failed, reconnect supervisor takes over")
        self._request_reconnect()
        return False

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def on_connection_lost(self, err: Any) -> None:
        log.error(f"[mqtt] connection lost: {err}")
        self._last_error = str(err)
        self._request_reconnect()

    def reconnect(self) -> bool:
        """
        Переподключение: пересоздаём клиент и ждём паузу по политике,
        пока не подключимся, не закроемся или не исчерпаем попытки.
        """
        with self._reconnect_lock:
            if self.is_connected():
                return True

            log.info("[mqtt] attempting to reconnect to MQTT broker...")
            attempt = 0
            while not self._closing.is_set():
                attempt += 1
                self._reconnect_attempts += 1
                if self._open_connection():
                    log.info(f"[mqtt] reconnected to MQTT broker (attempt {attempt})")
                    return True

                if self.policy.max_attempts and attempt >= self.policy.max_attempts:
                    log.error(f"[mqtt] giving up after {attempt} reconnect attempts")
                    return False

                delay = self.policy.delay_for(attempt)
                log.warning(f"[mqtt] reconnect attempt {attempt} failed, retry in {delay:.1f}s")
                if self._closing.wait(delay):
                    break
            return False

    # ───────── публикация ─────────
    def publish(self, topic: str, payload: str) -> PublishResult:
        """QoS 0, retain=False; ждём завершения отправки не дольше publish_timeout."""
        client = self.get_client()
        if client is None:
            return self._failed(topic, "no MQTT client")

        try:
            info = client.publish(topic, payload, qos=QOS_AT_MOST_ONCE, retain=False)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                return self._failed(topic, mqtt.error_string(info.rc), info.mid)
            info.wait_for_publish(timeout=self.settings.publish_timeout)
        except (ValueError, RuntimeError) as e:
            # paho: неверный топик / слишком большой payload / ошибка отправки
            return self._failed(topic, str(e))

        if not info.is_published():
            return self._failed(topic, "publish timed out", info.mid)

        log.debug(f"[mqtt] published → {topic} mid={info.mid}")
        return PublishResult(ok=True, topic=topic, mid=info.mid)

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected(),
            "broker_url": self.settings.broker_url,
            "protocol_version": self.settings.mqtt_protocol_version,
            "initialized": self._initialized,
            "handles_created": self._handles_created,
            "reconnecting": self._reconnect_lock.locked(),
            "reconnect_attempts": self._reconnect_attempts,
            "last_error": self._last_error,
        }

    def close(self) -> None:
        """Остановить супервизор и отключиться (shutdown приложения)."""
        self._closing.set()
        self._reconnect_wanted.set()
        with self._supervisor_lock:
            sup = self._supervisor
        if sup is not None and sup is not threading.current_thread():
            sup.join(timeout=self.settings.connect_timeout + 1.0)
        with self._init_lock:
            self._teardown_unlocked()
        log.info("[mqtt] connector closed")

    # ───────── внутреннее ─────────
    def _open_connection(self) -> bool:
        with self._init_lock:
            self._teardown_unlocked()
            if self._closing.is_set():
                return False

            url = self.settings.broker_url
            self._connack.clear()
            try:
                client = self._client_factory(self.settings)
                client.on_connect = self._on_connect
                client.on_disconnect = self._on_disconnect
                self._client = client
                self._handles_created += 1
                log.info(f"[mqtt] connecting to {url} (protocol v{self.settings.mqtt_protocol_version})")
                client.connect(self.settings.mqtt_host, self.settings.mqtt_port, keepalive=self.settings.mqtt_keepalive)
                client.loop_start()
            except Exception as e:
                self._last_error = str(e)
                log.error(f"[mqtt] failed to connect to {url}: {e}")
                return False

            got_connack = self._connack.wait(self.settings.connect_timeout)
            if self._connected.is_set():
                self._last_error = None
                return True

            if not got_connack:
                self._last_error = "connect timeout"
                log.error(f"[mqtt] no CONNACK from {url} within {self.settings.connect_timeout:.1f}s")
            # чтобы paho сам не переподключал этот клиент параллельно с нами
            client.loop_stop()
            return False

    def _teardown_unlocked(self) -> None:
        """Закрыть текущий клиент. _init_lock уже взят."""
        client = self._client
        self._client = None
        self._connected.clear()
        if client is None:
            return
        try:
            client.disconnect()
        except Exception as e:
            log.debug(f"[mqtt] disconnect on teardown: {e}")
        client.loop_stop()

    def _failed(self, topic: str, error: str, mid: Optional[int] = None) -> PublishResult:
        log.error(f"[mqtt] publish to {topic} failed: {error}")
        return PublishResult(ok=False, topic=topic, error=error, mid=mid)

    def _request_reconnect(self) -> None:
        if self._closing.is_set():
            return
        self._reconnect_wanted.set()
        with self._supervisor_lock:
            if self._supervisor is None or not self._supervisor.is_alive():
                self._supervisor = threading.Thread(target=self._supervise, name="mqtt-reconnect", daemon=True)
                self._supervisor.start()

    def _supervise(self) -> None:
        while True:
            self._reconnect_wanted.wait()
            if self._closing.is_set():
                return
            self._reconnect_wanted.clear()
            self.reconnect()

    # paho-mqtt v2 signature
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if client is not self._client:
            return
        if reason_code == 0:
            log.info(f"[mqtt] connected rc={reason_code}")
            self._connected.set()
        else:
            self._last_error = f"connect refused: {reason_code}"
            log.error(f"[mqtt] connect refused rc={reason_code}")
        self._connack.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        # старые клиенты после teardown игнорируем
        if client is not self._client:
            return
        was_connected = self._connected.is_set()
        self._connected.clear()
        if was_connected and not self._closing.is_set():
            self.on_connection_lost(reason_code)
