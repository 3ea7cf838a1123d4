# moshnet

A UDP transport that keeps two copies of a state object in step. Each side
sends diffs of its local state and acknowledges the states it has received
from the other side. On the server, the remote address follows the client
when the client's address or port changes. The client opens a fresh socket
from time to time when round trips stop succeeding.

## Modules

- `moshnet.compressor`: `compress` and `uncompress` wrap zlib. Output is
  limited to `BUFFER_SIZE` bytes. Any failure raises `CompressionError`, a
  `ValueError`.
- `moshnet.transportstate`: `TimestampedState`, a dataclass that holds a
  state with its sequence number and timestamp. `copy()` returns a deep copy.
- `moshnet.fragment`:
  - `Instruction` is the transport message, encoded in protocol-buffer wire
    format with `serialize()` and `Instruction.parse(data)`.
  - `Fragmenter.make_fragments(inst, mtu)` compresses an instruction and
    splits it into `Fragment`s. Each fragment is at most `mtu` bytes including
    its 10-byte header.
  - `Fragment.to_bytes()` / `Fragment.from_bytes(data)` encode and decode one
    fragment.
  - `FragmentAssembly.add_fragment(frag)` returns `True` once all fragments of
    an instruction are present. `get_assembly()` then returns the
    `Instruction`.
- `moshnet.packet`:
  - `Packet` and `Message` carry the direction bit, a 63-bit sequence number
    and two 16-bit timestamps. `NetworkException` reports network failures.
  - The millisecond clock is `timestamp()` and `freeze_timestamp()`.
    `timestamp()` returns the last frozen value.
  - 16-bit helpers are `timestamp16()` and `timestamp_diff()`.
  - `parse_portrange()` reads a port or port range.
- `moshnet.connection`: `Connection`, a non-blocking UDP endpoint.
  - Create one with `Connection.server(session, desired_ip, desired_port)` or
    `Connection.client(session, ip, port)`.
  - A server with no port given searches ports 60001–60999.
  - It keeps smoothed round-trip estimates (`srtt`, `rttvar`). `timeout()` is
    the retransmission timeout, between 50 and 1000 ms.
  - A failed send is recorded in `send_error`.
- `moshnet.sender`: `TransportSender` decides when to send a new diff and when
  to send an empty acknowledgement. It also handles the shutdown sequence.
- `moshnet.transport`: `Transport` joins a `TransportSender` with a receiver of
  remote states.
  - Build one with `Transport.server(...)` or `Transport.client(...)`, or
    directly from any connection-like object.
  - `recv()` reads one datagram. `tick()` sends if something is due.
    `wait_time()` returns how long to sleep before the next call.
  - `get_remote_diff()` returns the diff from the state last reported to the
    newest remote state.

## Examples

```python
from moshnet.packet import parse_portrange

low, high = parse_portrange("60001:60010")   # (60001, 60010)
parse_portrange("60001")                     # (60001, 60001)
```

`parse_portrange` raises `ValueError` when a value is malformed or out of
range, or when the low port is above the high port.

Splitting an instruction into fragments and joining them again:

```python
from moshnet.fragment import Fragment, FragmentAssembly, Fragmenter, Instruction

inst = Instruction(protocol_version=2, old_num=0, new_num=1, diff=b"hello")
assembly = FragmentAssembly()
for frag in Fragmenter().make_fragments(inst, 500):
    complete = assembly.add_fragment(Fragment.from_bytes(frag.to_bytes()))
assert complete and assembly.get_assembly() == inst
```

## What you supply

- **A session object** that does the encryption. It must provide:
  - `encrypt(message) -> bytes`
  - `decrypt(data) -> Message`
  - `printable_key() -> str`

  moshnet has no cipher of its own.
- **State objects**, such as a terminal screen or a stream of user input. They
  must provide:
  - `diff_from(other) -> bytes`
  - `apply_string(diff)`
  - `subtract(other)`
  - `reset_input()`
  - `compare(other) -> bool`
  - `init_diff() -> bytes`
  - equality

  moshnet defines no such states.
- **A clock, if you want one.** `TransportSender` and `Transport` accept a
  `clock` callable, which makes it easy to drive them in tests.

## What this package does not do

It is a library only. It has no client or server command, no terminal
emulation, no screen display and no key exchange. Those have to be built on
top of `Transport`.

## Tests

```
pip install -e .[test]
pytest
```