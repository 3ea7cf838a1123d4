"""The encrypted UDP connection that carries transport fragments."""

import errno
import math
import os
import socket
import sys
from collections import deque
from typing import Any, Deque, List, Optional, Tuple

from .packet import (
    Direction,
    Message,
    NetworkException,
    Packet,
    parse_portrange,
    timestamp,
    timestamp16,
    timestamp_diff,
)

__all__ = ["RECEIVE_MTU", "Connection"]

RECEIVE_MTU = 2048
"""Largest datagram (and ancillary data) accepted from the network."""

_U64 = (1 << 64) - 1
_U16 = 0xFFFF

_IP_MTU_DISCOVER = getattr(socket, "IP_MTU_DISCOVER", None)
_IP_PMTUDISC_DONT = getattr(socket, "IP_PMTUDISC_DONT", 0)
_IP_RECVTOS = getattr(socket, "IP_RECVTOS", None)


def _elapsed(now: int, then: int) -> int:
    """``now - then`` with 64-bit unsigned wraparound."""
    return (now - then) & _U64


def _warn(text: str) -> None:
    sys.stderr.write(text + "\n")
    sys.stderr.flush()


def _format_addr(addr: Tuple[Any, ...]) -> str:
    return f"{addr[0]}:{addr[1]}"


def _make_socket(family: int) -> socket.socket:
    """Open a non-blocking datagram socket with ECN and PMTU settings."""
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM, 0)
    except OSError as exc:
        raise NetworkException("socket", exc.errno or 0) from exc

    if _IP_MTU_DISCOVER is not None:
        try:
            sock.setsockopt(socket.IPPROTO_IP, _IP_MTU_DISCOVER, _IP_PMTUDISC_DONT)
        except OSError as exc:
            sock.close()
            raise NetworkException("setsockopt", exc.errno or 0) from exc

    try:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, 0x02)  # ECN-capable transport
    except OSError:
        pass

    if _IP_RECVTOS is not None:
        try:
            sock.setsockopt(socket.IPPROTO_IP, _IP_RECVTOS, 1)
        except OSError:
            pass

    sock.setblocking(False)
    return sock


class Connection:
    """A UDP association that encrypts packets with a session.

    The session must provide ``encrypt(message) -> bytes``,
    ``decrypt(data) -> Message`` and ``printable_key() -> str``.
    """

    IPV4_HEADER_LEN = 20 + 8
    IPV6_HEADER_LEN = 40 + 16 + 8
    DEFAULT_SEND_MTU = 500
    DEFAULT_IPV4_MTU = 1280
    DEFAULT_IPV6_MTU = 1280

    MIN_RTO = 50
    MAX_RTO = 1000

    PORT_RANGE_LOW = 60001
    PORT_RANGE_HIGH = 60999

    SERVER_ASSOCIATION_TIMEOUT = 40000
    PORT_HOP_INTERVAL = 10000

    MAX_PORTS_OPEN = 10
    MAX_OLD_SOCKET_AGE = 60000

    CONGESTION_TIMESTAMP_PENALTY = 500

    ADDED_BYTES = 8 + 4
    """Transport overhead: sequence number/nonce plus timestamps."""

    def __init__(self, session: Any, *, is_server: bool) -> None:
        self._socks: Deque[socket.socket] = deque()
        self.has_remote_addr = False
        self.remote_addr: Optional[Tuple[Any, ...]] = None
        self._remote_family: Optional[int] = None
        self.is_server = is_server
        self.mtu = self.DEFAULT_SEND_MTU
        self._session = session
        self._direction = Direction.TO_CLIENT if is_server else Direction.TO_SERVER
        self._saved_timestamp = _U16
        self._saved_timestamp_received_at = 0
        self._expected_receiver_seq = 0
        self._last_heard = _U64
        self._last_port_choice = _U64
        self._last_roundtrip_success = _U64
        self._rtt_hit = False
        self.srtt = 1000.0
        self.rttvar = 500.0
        self.send_error = ""
        self._setup()

    # construction

    @classmethod
    def server(
        cls, session: Any, desired_ip: Optional[str] = None, desired_port: Optional[str] = None
    ) -> "Connection":
        """Bind a server socket, preferring ``desired_ip`` and the port range given."""
        conn = cls(session, is_server=True)

        port_low = port_high = -1
        if desired_port:
            try:
                port_low, port_high = parse_portrange(desired_port)
            except ValueError as exc:
                _warn(str(exc))
                raise NetworkException("Invalid port range", 0) from exc

        if desired_ip:
            try:
                if conn._try_bind(desired_ip, port_low, port_high):
                    return conn
            except NetworkException as exc:
                _warn(f"Error binding to IP {desired_ip}: {exc}")

        try:
            if conn._try_bind(None, port_low, port_high):
                return conn
        except NetworkException as exc:
            _warn(f"Error binding to any interface: {exc}")
            conn.close()
            raise

        conn.close()
        raise NetworkException("Could not bind", 0)

    @classmethod
    def client(cls, session: Any, ip: str, port: str) -> "Connection":
        """Open a client socket associated with the server at ``ip``:``port``."""
        conn = cls(session, is_server=False)
        flags = socket.AI_NUMERICHOST | getattr(socket, "AI_NUMERICSERV", 0)
        try:
            infos = socket.getaddrinfo(ip, port, socket.AF_UNSPEC, socket.SOCK_DGRAM, 0, flags)
        except socket.gaierror as exc:
            raise NetworkException(f"Bad IP address ({ip}): {exc.strerror}", 0) from exc
        family, _, _, _, sockaddr = infos[0]
        conn.remote_addr = sockaddr
        conn._remote_family = family
        conn.has_remote_addr = True
        conn._socks.append(_make_socket(family))
        conn._set_mtu(family)
        return conn

    def _setup(self) -> None:
        self._last_port_choice = timestamp()

    def _set_mtu(self, family: int) -> None:
        if family == socket.AF_INET:
            self.mtu = self.DEFAULT_IPV4_MTU - self.IPV4_HEADER_LEN
        elif family == socket.AF_INET6:
            self.mtu = self.DEFAULT_IPV6_MTU - self.IPV6_HEADER_LEN
        else:
            raise NetworkException("Unknown address family", 0)

    def _try_bind(self, addr: Optional[str], port_low: int, port_high: int) -> bool:
        flags = (
            socket.AI_PASSIVE
            | socket.AI_NUMERICHOST
            | getattr(socket, "AI_NUMERICSERV", 0)
        )
        try:
            infos = socket.getaddrinfo(addr, "0", socket.AF_UNSPEC, socket.SOCK_DGRAM, 0, flags)
        except socket.gaierror as exc:
            shown = addr if addr is not None else "(null)"
            raise NetworkException(f"Bad IP address ({shown}): {exc.strerror}", 0) from exc
        family, _, _, _, local_addr = infos[0]
        if family not in (socket.AF_INET, socket.AF_INET6):
            raise NetworkException("Unknown address family", 0)

        search_low = port_low if port_low != -1 else self.PORT_RANGE_LOW
        search_high = port_high if port_high != -1 else self.PORT_RANGE_HIGH

        sock = _make_socket(family)
        self._socks.append(sock)
        saved_errno = 0
        candidate = local_addr
        for port in range(search_low, search_high + 1):
            candidate = (local_addr[0], port) + tuple(local_addr[2:])
            if family == socket.AF_INET6 and local_addr[0] == "::":
                try:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                except OSError as exc:
                    _warn(f"setsockopt( IPV6_V6ONLY, off ): {exc.strerror}")
            try:
                sock.bind(candidate)
            except OSError as exc:
                saved_errno = exc.errno or 0
                continue
            self._set_mtu(family)
            return True

        self._socks.pop().close()
        _warn(f"Failed binding to {_format_addr(candidate)}")
        raise NetworkException("bind", saved_errno)

    # sockets

    def _sock(self) -> socket.socket:
        if not self._socks:
            raise NetworkException("no socket open", 0)
        return self._socks[-1]

    def _hop_port(self) -> None:
        self._setup()
        self._socks.append(_make_socket(self._remote_family))
        self._prune_sockets()

    def _prune_sockets(self) -> None:
        if len(self._socks) <= 1:
            return
        if _elapsed(timestamp(), self._last_port_choice) > self.MAX_OLD_SOCKET_AGE:
            while len(self._socks) > 1:
                self._socks.popleft().close()
        while len(self._socks) > self.MAX_PORTS_OPEN:
            self._socks.popleft().close()

    def fds(self) -> List[int]:
        """File descriptors of all open sockets, oldest first."""
        return [sock.fileno() for sock in self._socks]

    def port(self) -> str:
        """Local UDP port number of the newest socket, as a decimal string."""
        try:
            local = self._sock().getsockname()
        except OSError as exc:
            raise NetworkException("getsockname", exc.errno or 0) from exc
        return str(local[1])

    def get_key(self) -> str:
        """The session key in printable form."""
        return self._session.printable_key()

    # sending

    def _new_packet(self, payload: bytes) -> Packet:
        reply = _U16
        now = timestamp()
        held = _elapsed(now, self._saved_timestamp_received_at)
        if held < 1000:
            # send the received timestamp advanced by how long we held it
            reply = (self._saved_timestamp + held) & _U16
            self._saved_timestamp = _U16
            self._saved_timestamp_received_at = 0
        return Packet(self._direction, timestamp16(), reply, bytes(payload))

    def send(self, payload: bytes) -> None:
        """Encrypt and send one datagram to the remote address, if known."""
        if not self.has_remote_addr:
            return

        packet = self._new_packet(payload)
        data = self._session.encrypt(packet.to_message())

        failure = None
        try:
            sent = self._sock().sendto(data, self.remote_addr)
            if sent != len(data):
                failure = 0
        except OSError as exc:
            failure = exc.errno or 0
        if failure is not None:
            self.send_error = "sendto: " + os.strerror(failure)
            if failure == errno.EMSGSIZE:
                self.mtu = self.DEFAULT_SEND_MTU  # payload MTU of last resort

        now = timestamp()
        if self.is_server:
            if _elapsed(now, self._last_heard) > self.SERVER_ASSOCIATION_TIMEOUT:
                self.has_remote_addr = False
                _warn("Server now detached from client.")
        elif (
            _elapsed(now, self._last_port_choice) > self.PORT_HOP_INTERVAL
            and _elapsed(now, self._last_roundtrip_success) > self.PORT_HOP_INTERVAL
        ):
            self._hop_port()

    # receiving

    def recv(self) -> bytes:
        """Return the payload of the first datagram waiting on any socket."""
        for sock in list(self._socks):
            try:
                payload = self._recv_one(sock)
            except NetworkException as exc:
                if exc.the_errno in (errno.EAGAIN, errno.EWOULDBLOCK):
                    continue
                raise
            self._prune_sockets()
            return payload
        raise NetworkException("No packet received")

    def _recv_one(self, sock: socket.socket) -> bytes:
        try:
            data, ancdata, flags, sender = sock.recvmsg(RECEIVE_MTU, RECEIVE_MTU)
        except OSError as exc:
            raise NetworkException("recvmsg", exc.errno or errno.EAGAIN) from exc

        if flags & getattr(socket, "MSG_TRUNC", 0):
            raise NetworkException("Received oversize datagram", 0)

        congestion_experienced = False
        if ancdata:
            level, kind, cdata = ancdata[0]
            tos_types = {socket.IP_TOS}
            if _IP_RECVTOS is not None:
                tos_types.add(_IP_RECVTOS)
            if level == socket.IPPROTO_IP and kind in tos_types and cdata:
                congestion_experienced = (cdata[0] & 0x03) == 0x03

        packet = Packet.from_message(self._session.decrypt(data))

        expected = Direction.TO_SERVER if self.is_server else Direction.TO_CLIENT
        if packet.direction != expected:
            # prevent malicious playback to sender
            raise ValueError("Illegal counterparty input (possible denial of service)")

        if packet.seq < self._expected_receiver_seq:
            # out-of-order: return it but do not use it for timing or targeting
            return packet.payload
        self._expected_receiver_seq = packet.seq + 1

        if packet.timestamp != _U16:
            self._saved_timestamp = packet.timestamp
            self._saved_timestamp_received_at = timestamp()
            if congestion_experienced:
                # gradually slow the counterparty down
                self._saved_timestamp = (
                    self._saved_timestamp - self.CONGESTION_TIMESTAMP_PENALTY
                ) & _U16
                if self.is_server:
                    _warn("Received explicit congestion notification.")

        if packet.timestamp_reply != _U16:
            rtt = float(timestamp_diff(timestamp16(), packet.timestamp_reply))
            if rtt < 5000:  # ignore large values, e.g. a suspended peer
                if not self._rtt_hit:
                    self.srtt = rtt
                    self.rttvar = rtt / 2
                    self._rtt_hit = True
                else:
                    alpha = 1.0 / 8.0
                    beta = 1.0 / 4.0
                    self.rttvar = (1 - beta) * self.rttvar + beta * abs(self.srtt - rtt)
                    self.srtt = (1 - alpha) * self.srtt + alpha * rtt

        self.has_remote_addr = True
        self._last_heard = timestamp()

        if self.is_server and self.remote_addr != sender:  # only the client can roam
            self.remote_addr = sender
            self._remote_family = sock.family
            _warn(f"Server now attached to client at {_format_addr(sender)}")

        return packet.payload

    # timing

    def timeout(self) -> int:
        """Retransmission timeout in ms, from smoothed RTT and its variance."""
        rto = int(math.ceil(self.srtt + 4 * self.rttvar))
        return min(max(rto, self.MIN_RTO), self.MAX_RTO)

    def set_last_roundtrip_success(self, success: int) -> None:
        """Record when the transport last saw an end-to-end round trip."""
        self._last_roundtrip_success = success

    # lifetime

    def close(self) -> None:
        """Close every socket."""
        while self._socks:
            self._socks.popleft().close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()