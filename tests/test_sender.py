from dataclasses import dataclass, field
from typing import List

import pytest

from moshnet.fragment import Fragment, FragmentAssembly
from moshnet.packet import MOSH_PROTOCOL_VERSION
from moshnet.sender import (
    ACK_INTERVAL,
    ACTIVE_RETRY_TIMEOUT,
    INT_MAX,
    SEND_INTERVAL_MAX,
    SEND_INTERVAL_MIN,
    SHUTDOWN_RETRIES,
    TransportSender,
)

U64 = (1 << 64) - 1


@dataclass
class Stream:
    actions: List[bytes] = field(default_factory=list)

    def diff_from(self, other):
        return b"".join(self.actions[len(other.actions):])

    def apply_string(self, diff):
        self.actions.extend(bytes([b]) for b in diff)

    def subtract(self, other):
        prefix = list(other.actions)
        if self.actions[: len(prefix)] == prefix:
            del self.actions[: len(prefix)]

    def reset_input(self):
        pass

    def compare(self, other):
        return self != other

    def init_diff(self):
        return b"".join(self.actions)


class FakeConnection:
    def __init__(self, has_remote_addr=True):
        self.srtt = 1000.0
        self.has_remote_addr = has_remote_addr
        self.mtu = 1000
        self.sent = []

    def timeout(self):
        return 1000

    def send(self, data):
        self.sent.append(data)


class Clock:
    def __init__(self, now=10000):
        self.now = now

    def __call__(self):
        return self.now


def decode_all(sent):
    assembly = FragmentAssembly()
    out = []
    for data in sent:
        if assembly.add_fragment(Fragment.from_bytes(data)):
            out.append(assembly.get_assembly())
    return out


def make(has_remote_addr=True):
    conn = FakeConnection(has_remote_addr)
    clock = Clock()
    sender = TransportSender(conn, Stream(), clock=clock)
    return sender, conn, clock


def test_send_interval_clamped():
    sender, conn, _ = make()
    conn.srtt = 1000.0
    assert sender.send_interval() == SEND_INTERVAL_MAX
    conn.srtt = 1.0
    assert sender.send_interval() == SEND_INTERVAL_MIN


def test_no_remote_addr_sends_nothing():
    sender, conn, _ = make(has_remote_addr=False)
    sender.current_state.actions.append(b"x")
    sender.tick()
    assert conn.sent == []
    assert sender.wait_time() == INT_MAX


def test_initial_tick_sends_empty_ack():
    sender, conn, _ = make()
    sender.tick()
    (inst,) = decode_all(conn.sent)
    assert inst.protocol_version == MOSH_PROTOCOL_VERSION
    assert inst.old_num == 0
    assert inst.new_num == 1
    assert inst.diff == b""
    assert len(inst.chaff) <= 16
    assert sender.sent_state_last == 1


def test_wait_time_after_ack_is_ack_interval():
    sender, _, _ = make()
    assert sender.wait_time() == 0
    sender.tick()
    assert sender.wait_time() == ACK_INTERVAL


def test_tick_sends_diff():
    sender, conn, _ = make()
    sender.current_state.actions.extend([b"h", b"i"])
    sender.tick()
    (inst,) = decode_all(conn.sent)
    assert inst.diff == b"hi"
    assert inst.old_num == 0
    assert inst.new_num == 1
    assert inst.ack_num == 0
    assert inst.throwaway_num == 0


def test_no_resend_immediately_after_send():
    sender, conn, _ = make()
    sender.current_state.actions.append(b"a")
    sender.tick()
    count = len(conn.sent)
    sender.tick()
    assert len(conn.sent) == count


def test_process_acknowledgment():
    sender, _, _ = make()
    sender.current_state.actions.append(b"a")
    sender.tick()
    assert sender.sent_state_acked == 0
    sender.process_acknowledgment_through(99)
    assert sender.sent_state_acked == 0
    sender.process_acknowledgment_through(1)
    assert sender.sent_state_acked == 1
    assert [s.num for s in sender.sent_states] == [1]


def test_ack_num_carried_in_instruction():
    sender, conn, _ = make()
    sender.set_ack_num(7)
    sender.tick()
    (inst,) = decode_all(conn.sent)
    assert inst.ack_num == 7


def test_shutdown_sends_final_state_number():
    sender, conn, clock = make()
    sender.start_shutdown()
    assert sender.shutdown_in_progress
    clock.now += 300
    sender.tick()
    insts = decode_all(conn.sent)
    assert insts[-1].new_num == U64
    assert not sender.shutdown_acknowledged
    sender.process_acknowledgment_through(U64)
    assert sender.shutdown_acknowledged


def test_state_locked_during_shutdown():
    sender, _, _ = make()
    sender.start_shutdown()
    with pytest.raises(RuntimeError):
        sender.current_state
    with pytest.raises(RuntimeError):
        sender.set_current_state(Stream())


def test_shutdown_times_out_by_time():
    sender, _, clock = make()
    assert not sender.shutdown_ack_timed_out()
    sender.start_shutdown()
    assert not sender.shutdown_ack_timed_out()
    clock.now += ACTIVE_RETRY_TIMEOUT
    assert sender.shutdown_ack_timed_out()


def test_shutdown_times_out_by_retries():
    sender, conn, clock = make()
    sender.start_shutdown()
    for _ in range(SHUTDOWN_RETRIES):
        assert not sender.shutdown_ack_timed_out()
        clock.now += 300
        sender.tick()
    assert sender.shutdown_ack_timed_out()
    assert len(decode_all(conn.sent)) == SHUTDOWN_RETRIES


def test_set_current_state_copies():
    sender, _, _ = make()
    state = Stream([b"a"])
    sender.set_current_state(state)
    state.actions.append(b"b")
    assert sender.current_state.actions == [b"a"]


def test_sent_state_queue_is_bounded():
    sender, conn, clock = make()
    for i in range(50):
        sender.current_state.actions.append(b"z")
        clock.now += 5
        sender.tick()
        clock.now += 300
    assert len(sender.sent_states) <= 32
    assert sender.sent_state_acked == 0
    insts = decode_all(conn.sent)
    assert sender.sent_state_last == insts[-1].new_num
    nums = [s.num for s in sender.sent_states]
    assert nums == sorted(nums)


def test_remote_heard_and_data_ack_accelerate_ack():
    sender, _, _ = make()
    sender.tick()
    assert sender.wait_time() == ACK_INTERVAL
    sender.set_data_ack()
    assert sender.wait_time() < ACK_INTERVAL
    sender.remote_heard(10000)
    assert sender.wait_time() < ACK_INTERVAL