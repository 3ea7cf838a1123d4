import os

import pytest

from moshnet.fragment import (
    FRAG_HEADER_LEN,
    Fragment,
    FragmentAssembly,
    Fragmenter,
    Instruction,
)

U64 = (1 << 64) - 1


def make_inst(**kw):
    base = dict(
        protocol_version=2,
        old_num=3,
        new_num=4,
        ack_num=5,
        throwaway_num=1,
        diff=b"diff",
        chaff=b"",
    )
    base.update(kw)
    return Instruction(**base)


def test_instruction_round_trip():
    inst = make_inst(diff=os.urandom(300), chaff=b"\x00\x01")
    assert Instruction.parse(inst.serialize()) == inst


def test_instruction_max_values():
    inst = make_inst(old_num=U64, new_num=U64, ack_num=U64)
    assert Instruction.parse(inst.serialize()) == inst


def test_instruction_first_field_bytes():
    assert Instruction(protocol_version=2).serialize()[:2] == b"\x08\x02"


def test_instruction_parse_skips_unknown_field():
    data = make_inst().serialize() + b"\x48\x07"
    assert Instruction.parse(data) == make_inst()


def test_fragment_wire_bytes():
    frag = Fragment(id=1, fragment_num=2, final=True, contents=b"ab")
    assert frag.to_bytes() == b"\x00" * 7 + b"\x01" + b"\x80\x02" + b"ab"


def test_fragment_round_trip():
    frag = Fragment(id=U64 - 5, fragment_num=0x7FFF, final=False, contents=b"xyz")
    assert Fragment.from_bytes(frag.to_bytes()) == frag


def test_fragment_too_short():
    with pytest.raises(ValueError):
        Fragment.from_bytes(b"\x00" * (FRAG_HEADER_LEN - 1))


def test_fragment_num_too_large():
    with pytest.raises(ValueError):
        Fragment(id=1, fragment_num=0x8000, contents=b"").to_bytes()


def test_blank_fragment():
    blank = Fragment.blank()
    assert blank.initialized is False
    assert blank.id == U64


def test_single_fragment_reassembly():
    inst = make_inst()
    frags = Fragmenter().make_fragments(inst, 1000)
    assert len(frags) == 1 and frags[0].final
    asm = FragmentAssembly()
    assert asm.add_fragment(frags[0]) is True
    assert asm.get_assembly() == inst


def test_multi_fragment_reverse_order():
    inst = make_inst(diff=os.urandom(500))
    frags = Fragmenter().make_fragments(inst, FRAG_HEADER_LEN + 50)
    assert len(frags) > 1
    assert [f.fragment_num for f in frags] == list(range(len(frags)))
    assert [f.final for f in frags] == [False] * (len(frags) - 1) + [True]
    assert all(len(f.contents) <= 50 for f in frags)
    asm = FragmentAssembly()
    results = [asm.add_fragment(Fragment.from_bytes(f.to_bytes())) for f in reversed(frags)]
    assert results == [False] * (len(frags) - 1) + [True]
    assert asm.get_assembly() == inst


def test_duplicate_fragment_not_counted_twice():
    inst = make_inst(diff=os.urandom(200))
    frags = Fragmenter().make_fragments(inst, FRAG_HEADER_LEN + 40)
    asm = FragmentAssembly()
    assert asm.add_fragment(frags[0]) is False
    assert asm.add_fragment(frags[0]) is False
    for f in frags[1:-1]:
        asm.add_fragment(f)
    assert asm.add_fragment(frags[-1]) is True
    assert asm.get_assembly() == inst


def test_conflicting_duplicate_raises():
    asm = FragmentAssembly()
    asm.add_fragment(Fragment(id=9, fragment_num=0, contents=b"a"))
    with pytest.raises(ValueError):
        asm.add_fragment(Fragment(id=9, fragment_num=0, contents=b"b"))


def test_new_id_discards_partial():
    fragmenter = Fragmenter()
    first = fragmenter.make_fragments(make_inst(diff=os.urandom(200)), FRAG_HEADER_LEN + 40)
    second_inst = make_inst(new_num=5, diff=b"short")
    second = fragmenter.make_fragments(second_inst, FRAG_HEADER_LEN + 40)
    asm = FragmentAssembly()
    asm.add_fragment(first[0])
    for f in second[:-1]:
        asm.add_fragment(f)
    assert asm.add_fragment(second[-1]) is True
    assert asm.get_assembly() == second_inst


def test_get_assembly_incomplete_raises():
    asm = FragmentAssembly()
    asm.add_fragment(Fragment(id=1, fragment_num=1, final=True, contents=b"x"))
    with pytest.raises(ValueError):
        asm.get_assembly()


def test_ids_change_with_instruction():
    fragmenter = Fragmenter()
    inst = make_inst()
    a = fragmenter.make_fragments(inst, 500)[0].id
    b = fragmenter.make_fragments(inst, 500)[0].id
    c = fragmenter.make_fragments(make_inst(ack_num=6), 500)[0].id
    d = fragmenter.make_fragments(make_inst(ack_num=6), 600)[0].id
    assert a == b
    assert c == b + 1
    assert d == c + 1


def test_first_id_is_one():
    assert Fragmenter().make_fragments(make_inst(), 500)[0].id == 1


def test_same_nums_different_diff_raises():
    fragmenter = Fragmenter()
    fragmenter.make_fragments(make_inst(diff=b"one"), 500)
    with pytest.raises(ValueError):
        fragmenter.make_fragments(make_inst(diff=b"two"), 500)


def test_last_ack_sent():
    fragmenter = Fragmenter()
    assert fragmenter.last_ack_sent() == 0
    fragmenter.make_fragments(make_inst(ack_num=U64), 500)
    assert fragmenter.last_ack_sent() == U64