"""The sending half of the state-synchronization transport."""

import copy
import math
import os
import sys
from typing import Any, Callable, List, Tuple

from .connection import Connection
from .fragment import Fragmenter, Instruction
from .packet import MOSH_PROTOCOL_VERSION, timestamp
from .transportstate import TimestampedState

__all__ = [
    "SEND_INTERVAL_MIN",
    "SEND_INTERVAL_MAX",
    "ACK_INTERVAL",
    "ACK_DELAY",
    "SHUTDOWN_RETRIES",
    "ACTIVE_RETRY_TIMEOUT",
    "INT_MAX",
    "CRYPTO_ADDED_BYTES",
    "TransportSender",
]

SEND_INTERVAL_MIN = 20
"""Minimum ms between frames."""
SEND_INTERVAL_MAX = 250
"""Maximum ms between frames."""
ACK_INTERVAL = 3000
"""ms between empty acks."""
ACK_DELAY = 100
"""ms before a delayed ack."""
SHUTDOWN_RETRIES = 16
"""Shutdown packets to send before giving up."""
ACTIVE_RETRY_TIMEOUT = 10000
"""Keep resending at frame rate for this long after last hearing from the peer."""

INT_MAX = (1 << 31) - 1
CRYPTO_ADDED_BYTES = 16
"""Default per-datagram overhead added by the encryption session."""

_U64 = (1 << 64) - 1
_CHAFF_MAX = 16


def _elapsed(now: int, then: int) -> int:
    return (now - then) & _U64


class TransportSender:
    """Sends diffs of the local state to the receiver and tracks acknowledgements.

    The state object must provide ``diff_from(other) -> bytes``,
    ``apply_string(diff)``, ``subtract(other)``, ``reset_input()``,
    ``compare(other) -> bool``, ``init_diff() -> bytes`` and equality.
    """

    def __init__(
        self,
        connection: Any,
        initial_state: Any,
        *,
        clock: Callable[[], int] = timestamp,
        crypto_overhead: int = CRYPTO_ADDED_BYTES,
    ) -> None:
        self._connection = connection
        self._clock = clock
        self._crypto_overhead = crypto_overhead
        self._current_state = copy.deepcopy(initial_state)
        now = clock()
        self._sent_states: List[TimestampedState] = [
            TimestampedState(now, 0, copy.deepcopy(initial_state))
        ]
        self._assumed = self._sent_states[0]
        self._fragmenter = Fragmenter()
        self._next_ack_time = now
        self._next_send_time = now
        self.verbose = 0
        self._shutdown_in_progress = False
        self._shutdown_tries = 0
        self._shutdown_start = _U64
        self._ack_num = 0
        self._pending_data_ack = False
        self.send_mindelay = 8
        """ms to collect all input before sending."""
        self._last_heard = 0
        self._mindelay_clock = _U64

    # state access

    @property
    def current_state(self) -> Any:
        """The local state; may not be touched once shutdown has started."""
        if self._shutdown_in_progress:
            raise RuntimeError("cannot modify current state during shutdown")
        return self._current_state

    def set_current_state(self, state: Any) -> None:
        """Replace the local state with a copy of ``state``."""
        if self._shutdown_in_progress:
            raise RuntimeError("cannot modify current state during shutdown")
        self._current_state = copy.deepcopy(state)
        self._current_state.reset_input()

    @property
    def sent_states(self) -> Tuple[TimestampedState, ...]:
        """Sent states, from the acknowledged one to the last sent."""
        return tuple(self._sent_states)

    @property
    def shutdown_in_progress(self) -> bool:
        return self._shutdown_in_progress

    @property
    def shutdown_acknowledged(self) -> bool:
        return self._sent_states[0].num == _U64

    @property
    def counterparty_shutdown_acknowledged(self) -> bool:
        return self._fragmenter.last_ack_sent() == _U64

    @property
    def sent_state_acked_timestamp(self) -> int:
        return self._sent_states[0].timestamp

    @property
    def sent_state_acked(self) -> int:
        return self._sent_states[0].num

    @property
    def sent_state_last(self) -> int:
        return self._sent_states[-1].num

    # timing

    def send_interval(self) -> int:
        """Roughly two frames per RTT, bounded by the frame-rate limits."""
        interval = int(math.ceil(self._connection.srtt / 2.0))
        return min(max(interval, SEND_INTERVAL_MIN), SEND_INTERVAL_MAX)

    def _calculate_timers(self) -> None:
        now = self._clock()
        self._update_assumed_receiver_state()
        self._rationalize_states()

        if self._pending_data_ack and self._next_ack_time > now + ACK_DELAY:
            self._next_ack_time = now + ACK_DELAY

        back = self._sent_states[-1]
        recently_heard = self._last_heard + ACTIVE_RETRY_TIMEOUT > now
        if not self._current_state == back.state:
            if self._mindelay_clock == _U64:
                self._mindelay_clock = now
            self._next_send_time = max(
                self._mindelay_clock + self.send_mindelay,
                back.timestamp + self.send_interval(),
            )
        elif not self._current_state == self._assumed.state and recently_heard:
            self._next_send_time = back.timestamp + self.send_interval()
            if self._mindelay_clock != _U64:
                self._next_send_time = max(
                    self._next_send_time, self._mindelay_clock + self.send_mindelay
                )
        elif not self._current_state == self._sent_states[0].state and recently_heard:
            self._next_send_time = back.timestamp + self._connection.timeout() + ACK_DELAY
        else:
            self._next_send_time = _U64

        # speed up shutdown sequence
        if self._shutdown_in_progress or self._ack_num == _U64:
            self._next_ack_time = back.timestamp + self.send_interval()

    def wait_time(self) -> int:
        """Milliseconds until the next possible event."""
        self._calculate_timers()
        next_wakeup = min(self._next_ack_time, self._next_send_time)
        now = self._clock()
        if not self._connection.has_remote_addr:
            return INT_MAX
        if next_wakeup > now:
            return min(next_wakeup - now, INT_MAX)
        return 0

    # sending

    def tick(self) -> None:
        """Send a diff or an empty ack if one is due."""
        self._calculate_timers()

        if not self._connection.has_remote_addr:
            return

        now = self._clock()
        if now < self._next_ack_time and now < self._next_send_time:
            return

        diff = self._current_state.diff_from(self._assumed.state)
        diff = self._attempt_prospective_resend_optimization(diff)

        if self.verbose:
            self._verify_diff(diff)

        if not diff:
            if now >= self._next_ack_time:
                self._send_empty_ack()
                self._mindelay_clock = _U64
            if now >= self._next_send_time:
                self._next_send_time = _U64
                self._mindelay_clock = _U64
        elif now >= self._next_send_time or now >= self._next_ack_time:
            self._send_to_receiver(diff)
            self._mindelay_clock = _U64

    def _verify_diff(self, diff: bytes) -> None:
        newstate = copy.deepcopy(self._assumed.state)
        newstate.apply_string(diff)
        if self._current_state.compare(newstate):
            sys.stderr.write("Warning, round-trip Instruction verification failed!\n")
        if self._current_state.init_diff() != newstate.init_diff():
            sys.stderr.write("Warning, target state Instruction verification failed!\n")

    def _send_empty_ack(self) -> None:
        now = self._clock()
        if now < self._next_ack_time:
            raise RuntimeError("empty ack sent before it was due")
        new_num = (self._sent_states[-1].num + 1) & _U64
        if self._shutdown_in_progress:
            new_num = _U64
        self._add_sent_state(now, new_num, self._current_state)
        self._send_in_fragments(b"", new_num)
        self._next_ack_time = now + ACK_INTERVAL
        self._next_send_time = _U64

    def _add_sent_state(self, the_timestamp: int, num: int, state: Any) -> None:
        self._sent_states.append(TimestampedState(the_timestamp, num, copy.deepcopy(state)))
        if len(self._sent_states) > 32:
            # erase a state from the middle of the queue
            del self._sent_states[-16]

    def _send_to_receiver(self, diff: bytes) -> None:
        back = self._sent_states[-1]
        if self._current_state == back.state:
            new_num = back.num
        else:
            new_num = (back.num + 1) & _U64
        if self._shutdown_in_progress:
            new_num = _U64

        if new_num == back.num:
            back.timestamp = self._clock()
        else:
            self._add_sent_state(self._clock(), new_num, self._current_state)

        self._send_in_fragments(diff, new_num)

        self._assumed = self._sent_states[-1]
        self._next_ack_time = self._clock() + ACK_INTERVAL
        self._next_send_time = _U64

    def _update_assumed_receiver_state(self) -> None:
        now = self._clock()
        self._assumed = self._sent_states[0]
        limit = self._connection.timeout() + ACK_DELAY
        for state in self._sent_states[1:]:
            if _elapsed(now, state.timestamp) < limit:
                self._assumed = state
            else:
                return

    def _rationalize_states(self) -> None:
        known = self._sent_states[0].state
        self._current_state.subtract(known)
        for state in reversed(self._sent_states):
            state.state.subtract(known)

    @staticmethod
    def _make_chaff() -> bytes:
        length = os.urandom(1)[0] % (_CHAFF_MAX + 1)
        return os.urandom(length)

    def _send_in_fragments(self, diff: bytes, new_num: int) -> None:
        inst = Instruction(
            protocol_version=MOSH_PROTOCOL_VERSION,
            old_num=self._assumed.num,
            new_num=new_num,
            ack_num=self._ack_num,
            throwaway_num=self._sent_states[0].num,
            diff=bytes(diff),
            chaff=self._make_chaff(),
        )
        if new_num == _U64:
            self._shutdown_tries += 1

        mtu = self._connection.mtu - Connection.ADDED_BYTES - self._crypto_overhead
        for frag in self._fragmenter.make_fragments(inst, mtu):
            self._connection.send(frag.to_bytes())
            if self.verbose:
                sys.stderr.write(
                    f"[{self._clock() % 100000}] Sent [{inst.old_num}=>{inst.new_num}] "
                    f"id {frag.id}, frag {frag.fragment_num} ack={inst.ack_num}, "
                    f"throwaway={inst.throwaway_num}, len={len(frag.contents)}, "
                    f"frame rate={1000.0 / self.send_interval():.2f}, "
                    f"timeout={self._connection.timeout()}, "
                    f"srtt={self._connection.srtt:.1f}\n"
                )
        self._pending_data_ack = False

    def _attempt_prospective_resend_optimization(self, proposed: bytes) -> bytes:
        """Prefer a diff against the known receiver state when it is not much longer."""
        if self._assumed is self._sent_states[0]:
            return proposed
        resend = self._current_state.diff_from(self._sent_states[0].state)
        if len(resend) <= len(proposed) or (
            len(resend) < 1000 and len(resend) - len(proposed) < 100
        ):
            self._assumed = self._sent_states[0]
            return resend
        return proposed

    # receiver feedback

    def process_acknowledgment_through(self, ack_num: int) -> None:
        """Drop states older than ``ack_num``, if that state is still held."""
        if any(state.num == ack_num for state in self._sent_states):
            self._sent_states = [s for s in self._sent_states if s.num >= ack_num]

    def set_ack_num(self, ack_num: int) -> None:
        """Record the newest receiver state number to acknowledge."""
        self._ack_num = ack_num

    def set_data_ack(self) -> None:
        """Ask for the next ack to be sent promptly."""
        self._pending_data_ack = True

    def remote_heard(self, ts: int) -> None:
        """Record when a new state was last received."""
        self._last_heard = ts

    # shutdown

    def start_shutdown(self) -> None:
        """Begin the shutdown sequence (idempotent)."""
        if not self._shutdown_in_progress:
            self._shutdown_start = self._clock()
            self._shutdown_in_progress = True

    def shutdown_ack_timed_out(self) -> bool:
        """Whether to give up waiting for the shutdown to be acknowledged."""
        if self._shutdown_in_progress:
            if self._shutdown_tries >= SHUTDOWN_RETRIES:
                return True
            if _elapsed(self._clock(), self._shutdown_start) >= ACTIVE_RETRY_TIMEOUT:
                return True
        return False