import asyncio
import random
from dataclasses import dataclass
from typing import Dict, Optional


class EVSEState:
    AVAILABLE = "Available"
    PREPARING = "Preparing"
    CHARGING = "Charging"
    SUSPENDED_EVSE = "SuspendedEVSE"
    SUSPENDED_EV = "SuspendedEV"
    FINISHING = "Finishing"
    RESERVED = "Reserved"
    UNAVAILABLE = "Unavailable"
    FAULTED = "Faulted"

    ALL = (
        AVAILABLE,
        PREPARING,
        CHARGING,
        SUSPENDED_EVSE,
        SUSPENDED_EV,
        FINISHING,
        RESERVED,
        UNAVAILABLE,
        FAULTED,
    )


@dataclass
class TransactionRecord:
    transaction_id: int
    connector_id: int
    id_tag: str
    meter_start: int


class SessionState:
    """Everything the engine mutates while a station is running.

    Readers and writers hold ``lock``. Connector 0 is the station itself;
    connectors ``1..connectors`` are outlets.
    """

    def __init__(
        self,
        connectors: int = 1,
        heartbeat_interval: int = 30,
        id_tag: str = "",
        meter_start_wh: Optional[int] = None,
    ):
        self.lock = asyncio.Lock()
        self.heartbeat_interval = heartbeat_interval
        self.id_tag = id_tag
        self.meter_wh = (
            meter_start_wh if meter_start_wh is not None else random.randint(1000, 5000)
        )
        self.statuses: Dict[int, str] = {
            i: EVSEState.AVAILABLE for i in range(0, connectors + 1)
        }
        self.transaction: Optional[TransactionRecord] = None
        self.starting: Optional[int] = None
        self.stopping = False

    @property
    def outlets(self):
        return [cid for cid in sorted(self.statuses) if cid > 0]

    def has_connector(self, cid: int) -> bool:
        return cid in self.statuses and cid > 0

    def begin_start(self, cid: int) -> bool:
        """Reserve ``cid`` for a start sequence; False if one cannot begin."""
        if self.transaction is not None or self.starting is not None:
            return False
        self.starting = cid
        return True

    def end_start(self, cid: int) -> None:
        if self.starting == cid:
            self.starting = None

    def begin_stop(self, transaction_id: int) -> bool:
        if self.transaction is None or self.stopping:
            return False
        if self.transaction.transaction_id != transaction_id:
            return False
        self.stopping = True
        return True

    def advance_meter(self, wh: int) -> int:
        self.meter_wh += max(0, int(wh))
        return self.meter_wh

    def open_transaction(self, transaction_id: int, cid: int, id_tag: str, meter_start: int):
        self.transaction = TransactionRecord(transaction_id, cid, id_tag, meter_start)
        self.statuses[cid] = EVSEState.CHARGING
        return self.transaction

    def close_transaction(self) -> Optional[TransactionRecord]:
        record, self.transaction = self.transaction, None
        self.stopping = False
        if record is not None:
            self.statuses[record.connector_id] = EVSEState.AVAILABLE
        return record

    def release_sequences(self) -> None:
        """Drop start/stop reservations left behind by a dead session."""
        self.starting = None
        self.stopping = False
