"""Copy-on-write B+tree over fixed-size pages.

Node layout::

    | type | nkeys |  pointers  |   offsets  | key-values
    |  2B  |   2B  | nkeys * 8B | nkeys * 2B | ...

Key-value layout::

    | klen | vlen | key | val |
    |  2B  |  2B  | ... | ... |
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, List, Optional, Tuple, Union

HEADER = 4

BTREE_PAGE_SIZE = 4096
BTREE_MAX_KEY_SIZE = 1000
BTREE_MAX_VAL_SIZE = 3000

assert HEADER + 8 + 2 + 4 + BTREE_MAX_KEY_SIZE + BTREE_MAX_VAL_SIZE <= BTREE_PAGE_SIZE

Buffer = Union[bytes, bytearray, memoryview]

_U16 = struct.Struct("<H")
_U64 = struct.Struct("<Q")
_HDR = struct.Struct("<HH")


class NodeType(IntEnum):
    """Kind of a B-tree node."""

    NODE = 1
    LEAF = 2


class Mode(IntEnum):
    """How an update treats existing and missing keys."""

    UPSERT = 0  # insert or replace
    UPDATE_ONLY = 1  # update existing keys
    INSERT_ONLY = 2  # only add new keys


class BNode:
    """A view of one B-tree node stored in a byte buffer."""

    __slots__ = ("data",)

    def __init__(self, data: Optional[Buffer] = None, size: int = BTREE_PAGE_SIZE):
        self.data = bytearray(size) if data is None else data

    def __len__(self) -> int:
        return len(self.data)

    def btype(self) -> int:
        return _U16.unpack_from(self.data, 0)[0]

    def nkeys(self) -> int:
        return _U16.unpack_from(self.data, 2)[0]

    def set_header(self, btype: int, nkeys: int) -> None:
        _HDR.pack_into(self.data, 0, int(btype), nkeys)

    def get_ptr(self, idx: int) -> int:
        if not 0 <= idx < self.nkeys():
            raise IndexError(f"pointer index out of range: {idx}")
        return _U64.unpack_from(self.data, HEADER + 8 * idx)[0]

    def set_ptr(self, idx: int, ptr: int) -> None:
        if not 0 <= idx < self.nkeys():
            raise IndexError(f"pointer index out of range: {idx}")
        _U64.pack_into(self.data, HEADER + 8 * idx, ptr)

    def _offset_pos(self, idx: int) -> int:
        nkeys = self.nkeys()
        if not 1 <= idx <= nkeys:
            raise IndexError(f"offset index out of range: {idx}")
        return HEADER + 8 * nkeys + 2 * (idx - 1)

    def get_offset(self, idx: int) -> int:
        if idx == 0:
            return 0
        return _U16.unpack_from(self.data, self._offset_pos(idx))[0]

    def set_offset(self, idx: int, offset: int) -> None:
        _U16.pack_into(self.data, self._offset_pos(idx), offset & 0xFFFF)

    def kv_pos(self, idx: int) -> int:
        nkeys = self.nkeys()
        if not 0 <= idx <= nkeys:
            raise IndexError(f"key-value index out of range: {idx}")
        return HEADER + 10 * nkeys + self.get_offset(idx)

    def get_key(self, idx: int) -> bytes:
        if not 0 <= idx < self.nkeys():
            raise IndexError(f"key index out of range: {idx}")
        pos = self.kv_pos(idx)
        klen = _U16.unpack_from(self.data, pos)[0]
        return bytes(self.data[pos + 4 : pos + 4 + klen])

    def get_val(self, idx: int) -> bytes:
        if not 0 <= idx < self.nkeys():
            raise IndexError(f"value index out of range: {idx}")
        pos = self.kv_pos(idx)
        klen, vlen = _HDR.unpack_from(self.data, pos)
        start = pos + 4 + klen
        return bytes(self.data[start : start + vlen])

    def nbytes(self) -> int:
        """Size of the node's used bytes."""
        return self.kv_pos(self.nkeys())


def node_lookup_le(node: BNode, key: bytes) -> int:
    """Index of the last key that is less than or equal to `key`.

    The first key is a copy from the parent (or the empty sentinel), so it
    always compares less than or equal and is never checked.
    """
    found = 0
    for i in range(1, node.nkeys()):
        current = node.get_key(i)
        if current <= key:
            found = i
        if current >= key:
            break
    return found


def _append_kv(new: BNode, idx: int, ptr: int, key: bytes, val: bytes) -> None:
    new.set_ptr(idx, ptr)
    pos = new.kv_pos(idx)
    _HDR.pack_into(new.data, pos, len(key), len(val))
    kstart = pos + 4
    new.data[kstart : kstart + len(key)] = key
    vstart = kstart + len(key)
    new.data[vstart : vstart + len(val)] = val
    new.set_offset(idx + 1, new.get_offset(idx) + 4 + len(key) + len(val))


def _append_range(new: BNode, old: BNode, dst: int, src: int, n: int) -> None:
    if src + n > old.nkeys() or dst + n > new.nkeys():
        raise IndexError("range out of bounds")
    if n == 0:
        return
    # pointers are contiguous in both nodes
    new.data[HEADER + 8 * dst : HEADER + 8 * (dst + n)] = old.data[
        HEADER + 8 * src : HEADER + 8 * (src + n)
    ]
    dst_begin = new.get_offset(dst)
    src_begin = old.get_offset(src)
    for i in range(1, n + 1):
        new.set_offset(dst + i, dst_begin + old.get_offset(src + i) - src_begin)
    begin = old.kv_pos(src)
    end = old.kv_pos(src + n)
    start = new.kv_pos(dst)
    new.data[start : start + (end - begin)] = old.data[begin:end]


def _leaf_insert(new: BNode, old: BNode, idx: int, key: bytes, val: bytes) -> None:
    new.set_header(NodeType.LEAF, old.nkeys() + 1)
    _append_range(new, old, 0, 0, idx)
    _append_kv(new, idx, 0, key, val)
    _append_range(new, old, idx + 1, idx, old.nkeys() - idx)


def _leaf_update(new: BNode, old: BNode, idx: int, key: bytes, val: bytes) -> None:
    new.set_header(NodeType.LEAF, old.nkeys())
    _append_range(new, old, 0, 0, idx)
    _append_kv(new, idx, 0, key, val)
    _append_range(new, old, idx + 1, idx + 1, old.nkeys() - (idx + 1))


def _leaf_delete(new: BNode, old: BNode, idx: int) -> None:
    new.set_header(NodeType.LEAF, old.nkeys() - 1)
    _append_range(new, old, 0, 0, idx)
    _append_range(new, old, idx, idx + 1, old.nkeys() - (idx + 1))


def _node_merge(new: BNode, left: BNode, right: BNode) -> None:
    new.set_header(left.btype(), left.nkeys() + right.nkeys())
    _append_range(new, left, 0, 0, left.nkeys())
    _append_range(new, right, left.nkeys(), 0, right.nkeys())
    assert new.nbytes() <= BTREE_PAGE_SIZE


def _replace_2kid(new: BNode, old: BNode, idx: int, ptr: int, key: bytes) -> None:
    new.set_header(NodeType.NODE, old.nkeys() - 1)
    _append_range(new, old, 0, 0, idx)
    _append_kv(new, idx, ptr, key, b"")
    _append_range(new, old, idx + 1, idx + 2, old.nkeys() - (idx + 2))


def _split2(left: BNode, right: BNode, old: BNode) -> None:
    nkeys = old.nkeys()
    assert nkeys >= 2

    def left_bytes(k: int) -> int:
        return HEADER + 10 * k + old.get_offset(k)

    def right_bytes(k: int) -> int:
        return old.nbytes() - left_bytes(k) + HEADER

    nleft = nkeys // 2
    while left_bytes(nleft) > BTREE_PAGE_SIZE:
        nleft -= 1
    assert nleft >= 1
    while right_bytes(nleft) > BTREE_PAGE_SIZE:
        nleft += 1
    assert nleft < nkeys
    nright = nkeys - nleft

    left.set_header(old.btype(), nleft)
    right.set_header(old.btype(), nright)
    _append_range(left, old, 0, 0, nleft)
    _append_range(right, old, 0, nleft, nright)
    assert right.nbytes() <= BTREE_PAGE_SIZE


def node_split3(old: BNode) -> List[BNode]:
    """Split a node that may be too big into 1 to 3 page-sized nodes."""
    if old.nbytes() <= BTREE_PAGE_SIZE:
        return [BNode(old.data[:BTREE_PAGE_SIZE])]
    left = BNode(size=2 * BTREE_PAGE_SIZE)  # may be split again
    right = BNode()
    _split2(left, right, old)
    if left.nbytes() <= BTREE_PAGE_SIZE:
        return [BNode(left.data[:BTREE_PAGE_SIZE]), right]
    leftleft = BNode()
    middle = BNode()
    _split2(leftleft, middle, left)
    assert leftleft.nbytes() <= BTREE_PAGE_SIZE
    return [leftleft, middle, right]


@dataclass
class UpdateRequest:
    """An insertion or update; the outcome is recorded on the request."""

    key: bytes
    val: bytes = b""
    mode: Mode = Mode.UPSERT
    added: bool = False  # a new key was added
    updated: bool = False  # a new key was added or an old value changed
    old: Optional[bytes] = None  # the value before the update


@dataclass
class DeleteRequest:
    """A deletion; the removed value is recorded on the request."""

    key: bytes
    old: Optional[bytes] = None


@dataclass
class BTree:
    """A B+tree whose pages are managed by three callbacks."""

    read_page: Callable[[int], Buffer]
    alloc_page: Callable[[Buffer], int]
    free_page: Callable[[int], None]
    root: int = 0

    def _node(self, ptr: int) -> BNode:
        return BNode(self.read_page(ptr))

    def _alloc(self, node: BNode) -> int:
        return self.alloc_page(node.data)

    # insertion

    def _tree_insert(self, req: UpdateRequest, node: BNode) -> Optional[BNode]:
        new = BNode(size=2 * BTREE_PAGE_SIZE)
        idx = node_lookup_le(node, req.key)
        btype = node.btype()
        if btype == NodeType.LEAF:
            if req.key == node.get_key(idx):
                if req.mode == Mode.INSERT_ONLY:
                    return None
                old = node.get_val(idx)
                if req.val == old:
                    return None
                _leaf_update(new, node, idx, req.key, req.val)
                req.updated = True
                req.old = old
            else:
                if req.mode == Mode.UPDATE_ONLY:
                    return None
                _leaf_insert(new, node, idx + 1, req.key, req.val)
                req.updated = True
                req.added = True
            return new
        if btype == NodeType.NODE:
            return self._node_insert(req, new, node, idx)
        raise ValueError(f"bad node type: {btype}")

    def _node_insert(
        self, req: UpdateRequest, new: BNode, node: BNode, idx: int
    ) -> Optional[BNode]:
        kptr = node.get_ptr(idx)
        updated = self._tree_insert(req, self._node(kptr))
        if updated is None:
            return None
        split = node_split3(updated)
        self.free_page(kptr)
        self._replace_kid_n(new, node, idx, split)
        return new

    def _replace_kid_n(self, new: BNode, old: BNode, idx: int, kids: List[BNode]) -> None:
        inc = len(kids)
        if inc == 1 and kids[0].get_key(0) == old.get_key(idx):
            # common case: only the pointer changes
            ptr = self._alloc(kids[0])
            size = old.nbytes()
            new.data[:size] = old.data[:size]
            new.set_ptr(idx, ptr)
            return
        new.set_header(NodeType.NODE, old.nkeys() + inc - 1)
        _append_range(new, old, 0, 0, idx)
        for i, kid in enumerate(kids):
            _append_kv(new, idx + i, self._alloc(kid), kid.get_key(0), b"")
        _append_range(new, old, idx + inc, idx + 1, old.nkeys() - (idx + 1))

    # deletion

    def _tree_delete(self, req: DeleteRequest, node: BNode) -> Optional[BNode]:
        idx = node_lookup_le(node, req.key)
        btype = node.btype()
        if btype == NodeType.LEAF:
            if req.key != node.get_key(idx):
                return None
            req.old = node.get_val(idx)
            new = BNode()
            _leaf_delete(new, node, idx)
            return new
        if btype == NodeType.NODE:
            return self._node_delete(req, node, idx)
        raise ValueError(f"bad node type: {btype}")

    def _node_delete(self, req: DeleteRequest, node: BNode, idx: int) -> Optional[BNode]:
        kptr = node.get_ptr(idx)
        updated = self._tree_delete(req, self._node(kptr))
        if updated is None:
            return None
        self.free_page(kptr)

        new = BNode()
        direction, sibling = self._should_merge(node, idx, updated)
        if direction < 0:
            merged = BNode()
            _node_merge(merged, sibling, updated)
            self.free_page(node.get_ptr(idx - 1))
            _replace_2kid(new, node, idx - 1, self._alloc(merged), merged.get_key(0))
        elif direction > 0:
            merged = BNode()
            _node_merge(merged, updated, sibling)
            self.free_page(node.get_ptr(idx + 1))
            _replace_2kid(new, node, idx, self._alloc(merged), merged.get_key(0))
        elif updated.nkeys() == 0:
            # one empty child without a sibling: the parent becomes empty too
            assert node.nkeys() == 1 and idx == 0
            new.set_header(NodeType.NODE, 0)
        else:
            self._replace_kid_n(new, node, idx, [updated])
        return new

    def _should_merge(
        self, node: BNode, idx: int, updated: BNode
    ) -> Tuple[int, Optional[BNode]]:
        if updated.nbytes() > BTREE_PAGE_SIZE // 4:
            return 0, None
        if idx > 0:
            sibling = self._node(node.get_ptr(idx - 1))
            if sibling.nbytes() + updated.nbytes() - HEADER <= BTREE_PAGE_SIZE:
                return -1, sibling
        if idx + 1 < node.nkeys():
            sibling = self._node(node.get_ptr(idx + 1))
            if sibling.nbytes() + updated.nbytes() - HEADER <= BTREE_PAGE_SIZE:
                return 1, sibling
        return 0, None

    # public interface

    def upsert(self, key: bytes, val: bytes) -> bool:
        """Insert or replace a key; True if the tree changed."""
        return self.update(UpdateRequest(key=key, val=val))

    def update(self, req: UpdateRequest) -> bool:
        """Apply an update request; True if the tree changed."""
        req.key = bytes(req.key)
        req.val = bytes(req.val or b"")
        if not req.key:
            raise ValueError("empty key")
        if len(req.key) > BTREE_MAX_KEY_SIZE:
            raise ValueError("key too long")
        if len(req.val) > BTREE_MAX_VAL_SIZE:
            raise ValueError("value too long")

        if self.root == 0:
            root = BNode()
            root.set_header(NodeType.LEAF, 2)
            # the empty sentinel key makes the tree cover the whole key space
            _append_kv(root, 0, 0, b"", b"")
            _append_kv(root, 1, 0, req.key, req.val)
            self.root = self._alloc(root)
            req.added = True
            req.updated = True
            return True

        updated = self._tree_insert(req, self._node(self.root))
        if updated is None:
            return False

        split = node_split3(updated)
        self.free_page(self.root)
        if len(split) > 1:
            root = BNode()
            root.set_header(NodeType.NODE, len(split))
            for i, kid in enumerate(split):
                ptr = self._alloc(kid)
                _append_kv(root, i, ptr, kid.get_key(0), b"")
            self.root = self._alloc(root)
        else:
            self.root = self._alloc(split[0])
        return True

    def delete(self, req: DeleteRequest) -> bool:
        """Remove a key; True if it existed."""
        req.key = bytes(req.key)
        if not req.key:
            raise ValueError("empty key")
        if len(req.key) > BTREE_MAX_KEY_SIZE:
            raise ValueError("key too long")
        if self.root == 0:
            return False

        updated = self._tree_delete(req, self._node(self.root))
        if updated is None:
            return False

        self.free_page(self.root)
        if updated.btype() == NodeType.NODE and updated.nkeys() == 1:
            # remove a level
            self.root = updated.get_ptr(0)
        else:
            self.root = self._alloc(updated)
        return True

    def get(self, key: bytes) -> Optional[bytes]:
        """The value stored under `key`, or None."""
        key = bytes(key)
        ptr = self.root
        if ptr == 0:
            return None
        node = self._node(ptr)
        while True:
            idx = node_lookup_le(node, key)
            btype = node.btype()
            if btype == NodeType.LEAF:
                return node.get_val(idx) if key == node.get_key(idx) else None
            if btype != NodeType.NODE:
                raise ValueError(f"bad node type: {btype}")
            node = self._node(node.get_ptr(idx))