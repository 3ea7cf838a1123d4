"""State-synchronization transport: a sender plus a simple receiver over a connection."""

import copy
import sys
from typing import Any, Callable, List, Optional, Tuple

from .connection import Connection
from .fragment import Fragment, FragmentAssembly
from .packet import MOSH_PROTOCOL_VERSION, NetworkException, timestamp
from .sender import CRYPTO_ADDED_BYTES, TransportSender
from .transportstate import TimestampedState

__all__ = ["RECEIVER_QUEUE_LIMIT", "RECEIVER_QUENCH_INTERVAL", "Transport"]

RECEIVER_QUEUE_LIMIT = 1024
"""Received states held before new ones are refused for a while."""
RECEIVER_QUENCH_INTERVAL = 15000
"""ms during which a full receiver queue refuses further states."""


class Transport:
    """Keeps a local state in sync with the peer and tracks the peer's state.

    ``connection`` must behave like :class:`Connection`; the states must
    provide the interface described by :class:`TransportSender`.
    """

    def __init__(
        self,
        connection: Any,
        initial_state: Any,
        initial_remote: Any,
        *,
        clock: Callable[[], int] = timestamp,
        crypto_overhead: int = CRYPTO_ADDED_BYTES,
    ) -> None:
        self._connection = connection
        self._clock = clock
        self._sender = TransportSender(
            connection, initial_state, clock=clock, crypto_overhead=crypto_overhead
        )
        self._received_states: List[TimestampedState] = [
            TimestampedState(clock(), 0, copy.deepcopy(initial_remote))
        ]
        self._receiver_quench_timer = 0
        self._last_receiver_state = copy.deepcopy(initial_remote)
        self._fragments = FragmentAssembly()
        self.verbose = 0

    @classmethod
    def server(
        cls,
        session: Any,
        initial_state: Any,
        initial_remote: Any,
        desired_ip: Optional[str] = None,
        desired_port: Optional[str] = None,
    ) -> "Transport":
        """A server-side transport bound to a local port."""
        return cls(Connection.server(session, desired_ip, desired_port), initial_state, initial_remote)

    @classmethod
    def client(
        cls, session: Any, initial_state: Any, initial_remote: Any, ip: str, port: str
    ) -> "Transport":
        """A client-side transport talking to ``ip``:``port``."""
        return cls(Connection.client(session, ip, port), initial_state, initial_remote)

    # receiving

    def _log(self, text: str) -> None:
        sys.stderr.write(f"[{self._clock() % 100000}] {text}\n")

    def recv(self) -> None:
        """Read one datagram and, once an instruction is complete, apply it."""
        frag = Fragment.from_bytes(self._connection.recv())
        if not self._fragments.add_fragment(frag):
            return
        inst = self._fragments.get_assembly()

        if inst.protocol_version != MOSH_PROTOCOL_VERSION:
            raise NetworkException("mosh protocol version mismatch", 0)

        self._sender.process_acknowledgment_through(inst.ack_num)

        # inform the network layer of end-to-end-to-end connectivity
        self._connection.set_last_roundtrip_success(self._sender.sent_state_acked_timestamp)

        if any(state.num == inst.new_num for state in self._received_states):
            return

        reference = next(
            (state for state in self._received_states if state.num == inst.old_num), None
        )
        if reference is None:
            # reference state discarded or not yet received; enforces idempotency
            return

        self._process_throwaway_until(inst.throwaway_num)

        if len(self._received_states) > RECEIVER_QUEUE_LIMIT:
            now = self._clock()
            if now < self._receiver_quench_timer:
                if self.verbose:
                    self._log(
                        f"Receiver queue full, discarding {inst.new_num} "
                        "(malicious sender or long-unidirectional connectivity?)"
                    )
                return
            self._receiver_quench_timer = now + RECEIVER_QUENCH_INTERVAL

        new_state = reference.copy()
        new_state.timestamp = self._clock()
        new_state.num = inst.new_num
        if inst.diff:
            new_state.state.apply_string(inst.diff)

        for index, state in enumerate(self._received_states):
            if state.num > new_state.num:
                self._received_states.insert(index, new_state)
                if self.verbose:
                    self._log(
                        f"Received OUT-OF-ORDER state {new_state.num} [ack {inst.ack_num}]"
                    )
                return

        if self.verbose:
            self._log(
                f"Received state {new_state.num} "
                f"[coming from {inst.old_num}, ack {inst.ack_num}]"
            )
        self._received_states.append(new_state)
        self._sender.set_ack_num(new_state.num)
        self._sender.remote_heard(new_state.timestamp)
        if inst.diff:
            self._sender.set_data_ack()

    def _process_throwaway_until(self, throwaway_num: int) -> None:
        kept = [state for state in self._received_states if state.num >= throwaway_num]
        if not kept:
            raise RuntimeError("throwaway number would discard every received state")
        self._received_states = kept

    def get_remote_diff(self) -> bytes:
        """Diff from the state last reported to the newest remote state."""
        newest = self._received_states[-1].state
        diff = newest.diff_from(self._last_receiver_state)
        oldest = self._received_states[0].state
        for state in reversed(self._received_states):
            state.state.subtract(oldest)
        self._last_receiver_state = copy.deepcopy(self._received_states[-1].state)
        return diff

    # sending

    def tick(self) -> None:
        """Send data or an ack if necessary."""
        self._sender.tick()

    def wait_time(self) -> int:
        """Milliseconds to wait until the next possible event."""
        return self._sender.wait_time()

    def start_shutdown(self) -> None:
        """Begin shutting down; the local state may not change afterwards."""
        self._sender.start_shutdown()

    def set_current_state(self, state: Any) -> None:
        """Replace the local state to be sent."""
        self._sender.set_current_state(state)

    def set_verbose(self, verbose: int) -> None:
        """Set diagnostic verbosity for the receiver and the sender."""
        self._sender.verbose = verbose
        self.verbose = verbose

    def set_send_delay(self, delay: int) -> None:
        """Set how long (ms) to collect input before sending."""
        self._sender.send_mindelay = delay

    # status

    @property
    def current_state(self) -> Any:
        return self._sender.current_state

    @property
    def shutdown_in_progress(self) -> bool:
        return self._sender.shutdown_in_progress

    @property
    def shutdown_acknowledged(self) -> bool:
        return self._sender.shutdown_acknowledged

    def shutdown_ack_timed_out(self) -> bool:
        """Whether to give up waiting for the shutdown acknowledgement."""
        return self._sender.shutdown_ack_timed_out()

    @property
    def counterparty_shutdown_ack_sent(self) -> bool:
        """The peer asked to shut down and we have acknowledged it."""
        return self._sender.counterparty_shutdown_acknowledged

    @property
    def has_remote_addr(self) -> bool:
        return self._connection.has_remote_addr

    @property
    def remote_addr(self) -> Any:
        return self._connection.remote_addr

    @property
    def received_states(self) -> Tuple[TimestampedState, ...]:
        return tuple(self._received_states)

    @property
    def remote_state_num(self) -> int:
        return self._received_states[-1].num

    @property
    def latest_remote_state(self) -> TimestampedState:
        return self._received_states[-1]

    @property
    def sent_state_acked_timestamp(self) -> int:
        return self._sender.sent_state_acked_timestamp

    @property
    def sent_state_acked(self) -> int:
        return self._sender.sent_state_acked

    @property
    def sent_state_last(self) -> int:
        return self._sender.sent_state_last

    @property
    def send_error(self) -> str:
        return self._connection.send_error

    @send_error.setter
    def send_error(self, value: str) -> None:
        self._connection.send_error = value

    def send_interval(self) -> int:
        """Current interval between frames in ms."""
        return self._sender.send_interval()

    def port(self) -> str:
        return self._connection.port()

    def get_key(self) -> str:
        return self._connection.get_key()

    def fds(self) -> List[int]:
        return self._connection.fds()