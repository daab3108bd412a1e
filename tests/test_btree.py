import random

import pytest

from pagedb.btree import (
    BTREE_MAX_KEY_SIZE,
    BTREE_MAX_VAL_SIZE,
    BTREE_PAGE_SIZE,
    BNode,
    BTree,
    DeleteRequest,
    Mode,
    NodeType,
    UpdateRequest,
    node_lookup_le,
    node_split3,
)

MASK32 = 0xFFFFFFFF


def fmix32(h):
    h &= MASK32
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & MASK32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & MASK32
    h ^= h >> 16
    return h


class Harness:
    def __init__(self):
        self.pages = {}
        self._next = 1
        self.ref = {}
        self.tree = BTree(self._read, self._alloc, self._free)

    def _read(self, ptr):
        return self.pages[ptr]

    def _alloc(self, data):
        assert BNode(data).nbytes() <= BTREE_PAGE_SIZE
        ptr = self._next
        self._next += 1
        self.pages[ptr] = data
        return ptr

    def _free(self, ptr):
        del self.pages[ptr]

    def node(self, ptr):
        return BNode(self.pages[ptr])

    def add(self, key, val):
        self.tree.upsert(key, val)
        self.ref[key] = val

    def delete(self, key):
        self.ref.pop(key, None)
        return self.tree.delete(DeleteRequest(key=key))

    def dump(self):
        items = []

        def walk(ptr):
            node = self.node(ptr)
            if node.btype() == NodeType.LEAF:
                items.extend((node.get_key(i), node.get_val(i)) for i in range(node.nkeys()))
            else:
                for i in range(node.nkeys()):
                    walk(node.get_ptr(i))

        walk(self.tree.root)
        assert items[0] == (b"", b"")
        return items[1:]

    def verify(self):
        assert self.dump() == sorted(self.ref.items())

        def check(node):
            assert node.nkeys() >= 1
            if node.btype() == NodeType.LEAF:
                return
            for i in range(node.nkeys()):
                kid = self.node(node.get_ptr(i))
                assert node.get_key(i) == kid.get_key(0)
                check(kid)

        check(self.node(self.tree.root))


HASHERS = {
    "ascending": lambda h: h & MASK32,
    "descending": lambda h: (-h) & MASK32,
    "random": fmix32,
}


@pytest.mark.parametrize("hasher", list(HASHERS.values()), ids=list(HASHERS))
def test_basic(hasher):
    total, early = 5000, 200
    c = Harness()
    c.add(b"k", b"v")
    c.verify()

    for i in range(total):
        c.add(f"key{hasher(i)}".encode(), f"vvv{hasher(-i)}".encode())
        if i < early:
            c.verify()
    c.verify()

    for i in range(early, total):
        assert c.delete(f"key{hasher(i)}".encode())
    c.verify()

    for i in range(early):
        c.add(f"key{hasher(i)}".encode(), f"vvv{hasher(i)}".encode())
        c.verify()

    assert c.tree.delete(DeleteRequest(key=b"kk")) is False

    for i in range(early):
        assert c.delete(f"key{hasher(i)}".encode())
        c.verify()

    c.add(b"k", b"v2")
    c.verify()
    c.delete(b"k")
    c.verify()

    # only the node holding the sentinel key remains
    assert len(c.pages) == 1
    assert BNode(c.pages[c.tree.root]).nkeys() == 1


def test_rand_length():
    rng = random.Random(7)
    c = Harness()
    for i in range(300):
        klen = fmix32(2 * i) % BTREE_MAX_KEY_SIZE
        vlen = fmix32(2 * i + 1) % BTREE_MAX_VAL_SIZE
        if klen == 0:
            continue
        c.add(rng.randbytes(klen), bytes(vlen))
        c.verify()
    root = BNode(c.pages[c.tree.root])
    assert root.btype() == NodeType.NODE
    assert root.get_key(0) == b""


@pytest.mark.parametrize("length", [1, 40, 1000, 2500, 3999])
def test_inc_length(length):
    rng = random.Random(length)
    c = Harness()
    klen = min(length, BTREE_MAX_KEY_SIZE)
    val = bytes(length - klen)
    factor = BTREE_PAGE_SIZE // length
    size = max(10, min(4000, factor * factor * 2))
    for _ in range(size):
        c.add(rng.randbytes(klen), val)
    c.verify()
    root = BNode(c.pages[c.tree.root])
    assert root.get_key(0) == b""
    assert node_lookup_le(root, b"") == 0


def test_get_on_empty_tree():
    c = Harness()
    assert c.tree.get(b"a") is None
    assert c.tree.delete(DeleteRequest(key=b"a")) is False


def test_get_returns_values():
    c = Harness()
    c.add(b"a", b"1")
    c.add(b"b", b"")
    assert c.tree.get(b"a") == b"1"
    assert c.tree.get(b"b") == b""
    assert c.tree.get(b"c") is None
    assert c.tree.delete(DeleteRequest(key=b"b")) is True
    assert c.tree.get(b"b") is None


def test_upsert_same_value_is_no_change():
    c = Harness()
    assert c.tree.update(UpdateRequest(key=b"a", val=b"1")) is True
    assert c.tree.update(UpdateRequest(key=b"a", val=b"1")) is False
    assert c.tree.upsert(b"a", b"2") is True
    assert c.tree.get(b"a") == b"2"


def test_update_modes():
    c = Harness()
    c.add(b"a", b"1")

    req = UpdateRequest(key=b"a", val=b"9", mode=Mode.INSERT_ONLY)
    assert c.tree.update(req) is False
    assert not req.updated
    assert c.tree.get(b"a") == b"1"

    req = UpdateRequest(key=b"b", val=b"2", mode=Mode.UPDATE_ONLY)
    assert c.tree.update(req) is False
    assert c.tree.get(b"b") is None

    req = UpdateRequest(key=b"a", val=b"3", mode=Mode.UPDATE_ONLY)
    assert c.tree.update(req) is True
    assert (req.updated, req.added, req.old) == (True, False, b"1")

    req = UpdateRequest(key=b"b", val=b"2", mode=Mode.INSERT_ONLY)
    assert c.tree.update(req) is True
    assert (req.updated, req.added, req.old) == (True, True, None)


def test_delete_records_old_value():
    c = Harness()
    c.add(b"a", b"alpha")
    req = DeleteRequest(key=b"a")
    assert c.tree.delete(req) is True
    assert req.old == b"alpha"
    assert c.tree.get(b"a") is None


@pytest.mark.parametrize(
    "key,val",
    [
        (b"", b"v"),
        (b"k" * (BTREE_MAX_KEY_SIZE + 1), b"v"),
        (b"k", b"v" * (BTREE_MAX_VAL_SIZE + 1)),
    ],
)
def test_update_rejects_bad_sizes(key, val):
    c = Harness()
    with pytest.raises(ValueError):
        c.tree.update(UpdateRequest(key=key, val=val))


def test_delete_rejects_empty_key():
    c = Harness()
    c.add(b"a", b"1")
    with pytest.raises(ValueError):
        c.tree.delete(DeleteRequest(key=b""))


def test_node_lookup_le():
    c = Harness()
    c.add(b"a", b"1")
    c.add(b"c", b"3")
    root = c.node(c.tree.root)
    assert root.btype() == NodeType.LEAF
    assert [root.get_key(i) for i in range(root.nkeys())] == [b"", b"a", b"c"]
    assert node_lookup_le(root, b"") == 0
    assert node_lookup_le(root, b"a") == 1
    assert node_lookup_le(root, b"b") == 1
    assert node_lookup_le(root, b"c") == 2
    assert node_lookup_le(root, b"z") == 2


def test_node_layout():
    c = Harness()
    c.add(b"ab", b"xyz")
    root = BNode(c.pages[c.tree.root])
    assert root.nkeys() == 2
    # header + 2 pointers + 2 offsets + sentinel kv (4) + "ab"/"xyz" kv (4 + 5)
    assert root.nbytes() == 4 + 16 + 4 + 4 + 9
    assert root.get_offset(0) == 0
    assert root.get_offset(1) == 4
    assert root.get_offset(2) == 13
    assert root.get_val(1) == b"xyz"


def test_node_split3_single_page():
    c = Harness()
    c.add(b"a", b"1")
    root = c.node(c.tree.root)
    parts = node_split3(root)
    assert len(parts) == 1
    assert len(parts[0]) == BTREE_PAGE_SIZE
    assert parts[0].get_key(1) == b"a"


def test_tree_grows_levels():
    c = Harness()
    for i in range(500):
        c.add(f"key{i:05d}".encode(), b"v" * 50)
    root = BNode(c.pages[c.tree.root])
    assert root.btype() == NodeType.NODE
    assert c.tree.get(b"key00250") == b"v" * 50
    c.verify()


def test_bnode_index_errors():
    node = BNode()
    node.set_header(NodeType.LEAF, 1)
    with pytest.raises(IndexError):
        node.get_ptr(1)
    with pytest.raises(IndexError):
        node.get_key(1)
    with pytest.raises(IndexError):
        node.kv_pos(2)