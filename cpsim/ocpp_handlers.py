from typing import Optional

from ocpp.routing import after, on
from ocpp.v16 import call_result
from ocpp.v16.enums import (
    Action,
    ConfigurationStatus,
    RemoteStartStopStatus,
    ResetStatus,
)

from .config import (
    HEARTBEAT_INTERVAL_KEY,
    METER_SAMPLE_INTERVAL_KEY,
    METER_SAMPLED_DATA_KEY,
    NUMBER_OF_CONNECTORS_KEY,
)


def as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _connector_from(connector_id) -> Optional[int]:
    if connector_id is None:
        return 1
    return as_int(connector_id)


class EVSEChargePoint:
    """Handlers for CSMS -> station requests.

    Mixed into :class:`cpsim.evse.ChargePointSimulator`, which provides
    ``state``, ``config``, ``logger`` and the background sequences. Every
    handler answers; bad payloads are rejected, never raised.
    """

    # ====== CSMS -> EVSE ======

    @on(Action.remote_start_transaction)
    async def on_remote_start(self, id_tag=None, connector_id=None, **kwargs):
        cid = _connector_from(connector_id)
        if not isinstance(id_tag, str) or not id_tag:
            self.logger.warning("RemoteStartTransaction without a valid idTag, rejecting")
            return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)

        async with self.state.lock:
            if cid is None or not self.state.has_connector(cid):
                self.logger.warning(f"RemoteStartTransaction for unknown connector {connector_id}, rejecting")
                return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)
            if not self.state.begin_start(cid):
                self.logger.warning(
                    f"RemoteStartTransaction on connector {cid} while a transaction is active or starting, rejecting"
                )
                return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)
            self.state.id_tag = id_tag

        self.logger.info(f"RemoteStartTransaction accepted: idTag={id_tag}, connector={cid}")
        return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_start_transaction)
    def after_remote_start(self, id_tag=None, connector_id=None, **kwargs):
        self._spawn(
            self._remote_start_sequence(_connector_from(connector_id), id_tag),
            name="remote-start",
        )

    @on(Action.remote_stop_transaction)
    async def on_remote_stop(self, transaction_id=None, **kwargs):
        tx_id = as_int(transaction_id)
        if tx_id is None:
            self.logger.warning("RemoteStopTransaction without a valid transactionId, rejecting")
            return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.rejected)

        async with self.state.lock:
            current = self.state.transaction
            if not self.state.begin_stop(tx_id):
                self.logger.warning(
                    f"RemoteStopTransaction for tx={tx_id} does not match current transaction "
                    f"{current.transaction_id if current else None}, rejecting"
                )
                return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.rejected)

        self.logger.info(f"RemoteStopTransaction accepted: tx={tx_id}")
        return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_stop_transaction)
    def after_remote_stop(self, transaction_id=None, **kwargs):
        self._spawn(self._remote_stop_sequence(), name="remote-stop")

    @on(Action.reset)
    def on_reset(self, type=None, **kwargs):
        self.logger.info(f"Reset requested: type={type}")
        return call_result.Reset(status=ResetStatus.accepted)

    @on(Action.get_configuration)
    async def on_get_configuration(self, key=None, **kwargs):
        requested = [k for k in key if isinstance(k, str) and k] if isinstance(key, list) else []

        async with self.state.lock:
            known = {
                HEARTBEAT_INTERVAL_KEY: (str(self.state.heartbeat_interval), False),
                METER_SAMPLED_DATA_KEY: ("Energy.Active.Import.Register", True),
                METER_SAMPLE_INTERVAL_KEY: (str(int(self.config.meter_interval)), True),
                NUMBER_OF_CONNECTORS_KEY: (str(len(self.state.outlets)), True),
            }

        names = requested or list(known)
        return call_result.GetConfiguration(
            configuration_key=[
                {"key": name, "value": known[name][0], "readonly": known[name][1]}
                for name in names
                if name in known
            ],
            unknown_key=[name for name in requested if name not in known],
        )

    @on(Action.change_configuration)
    async def on_change_configuration(self, key=None, value=None, **kwargs):
        self.logger.info(f"ChangeConfiguration: {key} = {value}")
        interval = as_int(value) if key == HEARTBEAT_INTERVAL_KEY else None
        if interval is None or interval <= 0:
            self.logger.warning(f"ChangeConfiguration {key}={value!r} rejected")
            return call_result.ChangeConfiguration(status=ConfigurationStatus.rejected)

        async with self.state.lock:
            self.state.heartbeat_interval = interval
        self.logger.info(f"Heartbeat interval set to {interval}s")
        return call_result.ChangeConfiguration(status=ConfigurationStatus.accepted)
