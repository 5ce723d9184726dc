import asyncio
import inspect
import logging
import random
from dataclasses import asdict
from typing import List, Optional, Set

from ocpp.charge_point import camel_to_snake_case
from ocpp.exceptions import InternalError, NotSupportedError
from ocpp.messages import Call, CallError, CallResult
from ocpp.routing import create_route_map
from ocpp.v16 import call
from ocpp.v16.enums import (
    AuthorizationStatus,
    ChargePointErrorCode,
    Reason,
    RegistrationStatus,
)

from .config import SimulatorConfig
from .correlation import CorrelationTable, Outcome, PendingRequest, Reply
from .exceptions import NotConnectedError, ReconnectAttemptsExhausted
from .messages import build_call, decode, encode, payload_from, utc_timestamp
from .ocpp_handlers import EVSEChargePoint, as_int
from .state_machine import EVSEState, SessionState
from .transport import Backoff, WebSocketTransport, make_ssl_context


class ChargePointSimulator(EVSEChargePoint):
    """One simulated station talking OCPP 1.6-J to a CSMS.

    ``run()`` keeps a session alive: connect, register, announce the
    connectors, then serve inbound traffic next to the heartbeat, status
    and meter loops until the connection fails, and reconnect with
    exponential backoff.
    """

    def __init__(
        self,
        config: SimulatorConfig,
        logger: Optional[logging.Logger] = None,
        transport: Optional[WebSocketTransport] = None,
    ):
        self.config = config
        self.identity = config.identity
        self.logger = logger or logging.getLogger("cpsim")
        self.state = SessionState(
            connectors=config.connectors,
            heartbeat_interval=config.heartbeat_interval,
            id_tag=config.id_tag,
            meter_start_wh=config.meter_start_wh,
        )
        self.transport = transport or WebSocketTransport(
            config.endpoint_url,
            subprotocol=config.ocpp_protocol,
            ssl_context=make_ssl_context(
                config.tls_ca_cert, config.tls_client_cert, config.tls_client_key
            ),
            logger=self.logger,
        )
        self.pending = CorrelationTable(self.logger)
        self.backoff = Backoff(
            config.reconnect_base_delay,
            config.reconnect_max_delay,
            config.max_reconnect_attempts,
        )
        self.established = False
        self._background: Set[asyncio.Task] = set()
        self.route_map = create_route_map(self)

    def is_connected(self) -> bool:
        return self.transport.is_open()

    # -------- supervisor --------

    async def run(self) -> None:
        self.logger.info(f"Starting charge point simulator for {self.identity.charge_point_id}")
        while True:
            try:
                await self._connect_and_serve()
            except asyncio.CancelledError:
                self.logger.info("Charge point simulator cancelled")
                raise
            except Exception as e:
                self.logger.error(f"OCPP connection error: {e!r}")

            if self.established:
                self.backoff.reset()
            try:
                delay = self.backoff.next_delay()
            except ReconnectAttemptsExhausted as e:
                self.logger.error(
                    f"Maximum reconnection attempts ({e.attempts}) reached, stopping simulator"
                )
                raise
            self.logger.warning(
                f"Reconnecting to CSMS in {delay:.2f}s "
                f"(attempt {self.backoff.attempts}/{self.backoff.max_attempts})"
            )
            await asyncio.sleep(delay)

    async def _connect_and_serve(self) -> None:
        self.established = False
        await self.transport.connect()

        stopping = asyncio.Event()
        receiver = asyncio.create_task(self._receive_loop(), name="receive")
        periodic: List[asyncio.Task] = []
        try:
            # Boot -> grace -> Available for 0..N, in that order
            await self._register()
            await asyncio.sleep(self.config.registration_grace)
            for cid in sorted(self.state.statuses):
                await self.send_status(cid, EVSEState.AVAILABLE)

            periodic = [
                asyncio.create_task(self._heartbeat_loop(stopping), name="heartbeat"),
                asyncio.create_task(self._status_loop(stopping), name="status"),
                asyncio.create_task(self._meter_loop(stopping), name="meter-values"),
            ]
            self.established = True
            self.logger.info("Session established")

            done, _ = await asyncio.wait(
                [receiver, *periodic], return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                task.result()
            raise ConnectionError("session task ended unexpectedly")
        finally:
            await self._teardown(stopping, receiver, periodic)

    async def _teardown(self, stopping, receiver, periodic) -> None:
        stopping.set()
        receiver.cancel()
        await self.transport.close()
        await self.pending.cancel_all()

        if periodic:
            _, late = await asyncio.wait(periodic, timeout=self.config.shutdown_grace)
            for task in late:
                self.logger.warning(f"{task.get_name()} did not stop within grace period")
                task.cancel()
        background = list(self._background)
        for task in background:
            task.cancel()

        results = await asyncio.gather(receiver, *periodic, *background, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self.logger.debug(f"Session task ended with {result!r}")

        await self.pending.cancel_all()
        async with self.state.lock:
            self.state.release_sequences()
        self.logger.info("Session closed")

    # -------- background tasks --------

    def _spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Background task {task.get_name()} failed: {exc!r}", exc_info=exc)

    # -------- outbound calls --------

    async def _send_call(self, payload) -> PendingRequest:
        message = build_call(payload)
        pending = await self.pending.register(message.unique_id, message.action)
        try:
            await self.transport.send(encode(message))
        except BaseException:
            await self.pending.cancel(message.unique_id)
            raise
        return pending

    async def _await_reply(self, pending: PendingRequest, timeout: Optional[float] = None) -> Reply:
        timeout = timeout or self.config.call_timeout
        reply = await self.pending.wait(pending, timeout)
        if reply.outcome is Outcome.ERROR:
            self.logger.warning(
                f"{pending.action} {pending.unique_id} failed: "
                f"{reply.error_code} - {reply.error_description}"
            )
        elif reply.outcome is Outcome.TIMEOUT:
            self.logger.warning(f"{pending.action} {pending.unique_id} timed out after {timeout}s")
        elif reply.outcome is Outcome.CANCELLED:
            self.logger.warning(f"{pending.action} {pending.unique_id} cancelled")
        return reply

    async def call(self, payload, timeout: Optional[float] = None) -> Reply:
        """Send a ``ocpp.v16.call`` payload and wait for its reply."""
        pending = await self._send_call(payload)
        return await self._await_reply(pending, timeout)

    def _collect(self, pending: PendingRequest) -> None:
        """Settle the reply in the background so periodic timers keep their pace."""
        self._spawn(self._await_reply(pending), name=f"reply-{pending.action}")

    # -------- inbound --------

    async def _receive_loop(self) -> None:
        try:
            while True:
                raw = await self.transport.recv()
                self._spawn(self._process(raw), name="inbound")
        finally:
            # wake every waiter right away instead of letting them time out
            await self.pending.cancel_all()

    async def _process(self, raw: str) -> None:
        message = decode(raw, self.logger)
        if message is None:
            return
        if isinstance(message, CallResult):
            await self.pending.resolve(message.unique_id, message.payload)
        elif isinstance(message, CallError):
            self.logger.warning(
                f"Received CALLERROR for {message.unique_id}: "
                f"{message.error_code} - {message.error_description}"
            )
            await self.pending.reject(
                message.unique_id,
                message.error_code,
                message.error_description,
                message.error_details,
            )
        else:
            await self._handle_call(message)

    async def _handle_call(self, msg: Call) -> None:
        self.logger.info(f"Handling server request: {msg.action}")
        handlers = self.route_map.get(msg.action, {})
        handler = handlers.get("_on_action")
        kwargs = camel_to_snake_case(msg.payload) if isinstance(msg.payload, dict) else {}

        if handler is None:
            self.logger.warning(f"Action {msg.action} not supported")
            response = msg.create_call_error(
                NotSupportedError(details={"cause": f"Action {msg.action} not supported"})
            )
        else:
            try:
                result = handler(**kwargs)
                if inspect.isawaitable(result):
                    result = await result
                response = msg.create_call_result(payload_from(result))
            except Exception as e:
                self.logger.exception(f"Handler for {msg.action} failed")
                response = msg.create_call_error(InternalError(details={"cause": str(e)}))

        await self.transport.send(encode(response))

        # deferred work starts only once the acceptance is on the wire
        hook = handlers.get("_after_action")
        if hook is not None and isinstance(response, CallResult):
            if response.payload.get("status") == "Accepted":
                result = hook(**kwargs)
                if inspect.isawaitable(result):
                    await result

    # -------- registration & periodic obligations --------

    async def _register(self) -> None:
        pending = await self._send_call(
            call.BootNotification(
                charge_point_model=self.identity.model,
                charge_point_vendor=self.identity.vendor,
                charge_point_serial_number=self.identity.serial_number,
                firmware_version=self.identity.firmware_version,
            )
        )
        self._spawn(self._apply_registration(pending), name="boot-reply")

    async def _apply_registration(self, pending: PendingRequest) -> None:
        reply = await self._await_reply(pending)
        if not reply.ok:
            return
        status = reply.payload.get("status")
        if status != RegistrationStatus.accepted:
            self.logger.warning(f"BootNotification answered with status {status}")
        interval = as_int(reply.payload.get("interval"))
        if interval is not None and interval > 0:
            async with self.state.lock:
                self.state.heartbeat_interval = interval
            self.logger.info(f"Heartbeat interval set to {interval}s by BootNotification")

    @staticmethod
    async def _idle(stopping: asyncio.Event, seconds: float) -> bool:
        """Sleep ``seconds`` or until the session stops; True means stop."""
        try:
            await asyncio.wait_for(stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _heartbeat_loop(self, stopping: asyncio.Event) -> None:
        while True:
            async with self.state.lock:
                interval = self.state.heartbeat_interval
            if await self._idle(stopping, interval):
                return
            pending = await self._send_call(call.Heartbeat())
            self._collect(pending)

    async def _status_loop(self, stopping: asyncio.Event) -> None:
        while not await self._idle(stopping, self.config.status_interval):
            async with self.state.lock:
                statuses = [(cid, self.state.statuses[cid]) for cid in self.state.outlets]
            for cid, status in statuses:
                await self.send_status(cid, status, wait=False)

    async def _meter_loop(self, stopping: asyncio.Event) -> None:
        while not await self._idle(stopping, self.config.meter_interval):
            await self.send_meter_values(wait=False)

    # -------- messages --------

    async def send_status(
        self,
        connector_id: int,
        status: str,
        error_code: str = ChargePointErrorCode.no_error,
        wait: bool = True,
    ) -> Optional[Reply]:
        pending = await self._send_call(
            call.StatusNotification(
                connector_id=connector_id,
                error_code=error_code,
                status=status,
                timestamp=utc_timestamp(),
            )
        )
        self.logger.info(f"StatusNotification sent: connector={connector_id}, status={status}")
        if wait:
            return await self._await_reply(pending)
        self._collect(pending)
        return None

    async def send_meter_values(self, wait: bool = True) -> Optional[Reply]:
        """Report the energy register; no-op without an active transaction."""
        async with self.state.lock:
            record = self.state.transaction
            if record is None:
                return None
            added = max(1, int(self.config.meter_rate_w * self.config.meter_interval / 3600))
            meter = self.state.advance_meter(added)
            mv = [{
                "timestamp": utc_timestamp(),
                "sampledValue": [{
                    "value": str(meter),
                    "context": "Sample.Periodic",
                    "measurand": "Energy.Active.Import.Register",
                    "unit": "Wh",
                }],
            }]
            pending = await self._send_call(
                call.MeterValues(
                    connector_id=record.connector_id,
                    meter_value=mv,
                    transaction_id=record.transaction_id,
                )
            )
        self.logger.info(f"MeterValues: cid={record.connector_id}, energy(Wh)={meter}")
        if wait:
            return await self._await_reply(pending)
        self._collect(pending)
        return None

    async def authorize(self, id_tag: str) -> Optional[str]:
        """Authorize ``id_tag``; returns idTagInfo.status, None on timeout or error."""
        self.logger.info(f"Sending Authorize for idTag={id_tag}")
        reply = await self.call(call.Authorize(id_tag=id_tag), timeout=self.config.authorize_timeout)
        if not reply.ok:
            return None
        info = reply.payload.get("idTagInfo")
        status = info.get("status") if isinstance(info, dict) else None
        if status == AuthorizationStatus.accepted:
            self.logger.info(f"Authorize accepted for idTag={id_tag}")
        else:
            self.logger.warning(f"Authorize for idTag={id_tag} answered with status {status}")
        return status

    async def _start_transaction(self, connector_id: int, id_tag: str) -> Optional[int]:
        async with self.state.lock:
            meter_start = self.state.meter_wh
        reply = await self.call(
            call.StartTransaction(
                connector_id=connector_id,
                id_tag=id_tag,
                meter_start=meter_start,
                timestamp=utc_timestamp(),
            )
        )
        tx_id = as_int(reply.payload.get("transactionId")) if reply.ok else None
        if tx_id is None:
            self.logger.warning(f"StartTransaction on connector {connector_id} got no transactionId")
            return None

        async with self.state.lock:
            self.state.open_transaction(tx_id, connector_id, id_tag, meter_start)
        self.logger.info(
            f"StartTransaction confirmed: connector={connector_id}, tx_id={tx_id}, meterStart={meter_start}"
        )
        await self.send_status(connector_id, EVSEState.CHARGING)
        return tx_id

    async def _stop_transaction(self, reason: str) -> bool:
        async with self.state.lock:
            record = self.state.transaction
            if record is None:
                self.state.stopping = False
                return False
            consumed = random.randint(500, 5000)
            meter = self.state.advance_meter(consumed)
            pending = await self._send_call(
                call.StopTransaction(
                    meter_stop=meter,
                    timestamp=utc_timestamp(),
                    transaction_id=record.transaction_id,
                    reason=reason,
                    id_tag=record.id_tag,
                )
            )
            self.state.close_transaction()

        self.logger.info(
            f"Stopped transaction {record.transaction_id} with meter {meter} (consumed: {consumed})"
        )
        await self._await_reply(pending)
        await self.send_status(record.connector_id, EVSEState.AVAILABLE)
        return True

    async def _remote_start_sequence(self, connector_id: int, id_tag: str) -> None:
        try:
            await asyncio.sleep(self.config.remote_start_delay)
            self.logger.info(f"Starting authorize and transaction sequence for idTag={id_tag}")
            status = await self.authorize(id_tag)
            if status != AuthorizationStatus.accepted:
                self.logger.warning("Authorization failed, transaction will not be started")
                return
            await asyncio.sleep(self.config.start_delay)
            await self._start_transaction(connector_id, id_tag)
        finally:
            async with self.state.lock:
                self.state.end_start(connector_id)

    async def _remote_stop_sequence(self) -> None:
        try:
            await asyncio.sleep(self.config.stop_delay)
            await self._stop_transaction(Reason.remote)
        finally:
            async with self.state.lock:
                self.state.stopping = False

    # -------- manual control --------

    def _require_connection(self) -> None:
        if not self.is_connected():
            raise NotConnectedError("no open session with the CSMS")

    async def trigger_authorize(self, id_tag: Optional[str] = None) -> Optional[str]:
        self._require_connection()
        async with self.state.lock:
            id_tag = id_tag or self.state.id_tag
        return await self.authorize(id_tag)

    async def run_full_transaction(
        self, id_tag: Optional[str] = None, connector_id: int = 1
    ) -> Optional[int]:
        """Authorize, start, sample the meter a few times and stop.

        Returns the transaction id, or None when the transaction never started.
        """
        self._require_connection()
        async with self.state.lock:
            id_tag = id_tag or self.state.id_tag
            if not self.state.has_connector(connector_id):
                raise ValueError(f"unknown connector {connector_id}")
            if not self.state.begin_start(connector_id):
                self.logger.warning("A transaction is already active or starting")
                return None

        try:
            status = await self.authorize(id_tag)
            if status != AuthorizationStatus.accepted:
                self.logger.warning(f"Authorization failed or timed out for idTag={id_tag}")
                return None
            async with self.state.lock:
                self.state.id_tag = id_tag
            tx_id = await self._start_transaction(connector_id, id_tag)
        finally:
            async with self.state.lock:
                self.state.end_start(connector_id)
        if tx_id is None:
            return None

        await asyncio.sleep(self.config.charge_delay)
        for _ in range(self.config.meter_samples):
            await self.send_meter_values()
            await asyncio.sleep(self.config.sample_gap)

        async with self.state.lock:
            if not self.state.begin_stop(tx_id):
                self.logger.info(f"Transaction {tx_id} is already being stopped")
                return tx_id
        await self._stop_transaction(Reason.local)
        return tx_id

    async def set_connector_status(self, status: str, connector_id: int = 1) -> Reply:
        if status not in EVSEState.ALL:
            raise ValueError(f"unknown connector status {status!r}")
        self._require_connection()
        async with self.state.lock:
            if connector_id not in self.state.statuses:
                raise ValueError(f"unknown connector {connector_id}")
            self.state.statuses[connector_id] = status
        return await self.send_status(connector_id, status)

    async def snapshot(self) -> dict:
        async with self.state.lock:
            record = self.state.transaction
            return {
                "chargePointId": self.identity.charge_point_id,
                "serverUrl": self.config.server_url,
                "model": self.identity.model,
                "vendor": self.identity.vendor,
                "serialNumber": self.identity.serial_number,
                "firmwareVersion": self.identity.firmware_version,
                "heartbeatInterval": self.state.heartbeat_interval,
                "idTag": self.state.id_tag,
                "meterWh": self.state.meter_wh,
                "connectors": {str(cid): s for cid, s in sorted(self.state.statuses.items())},
                "transaction": asdict(record) if record else None,
                "connected": self.is_connected(),
                "pendingRequests": len(self.pending),
            }
