# pagedb

`pagedb` holds the building blocks of a small embedded database:

- `pagedb.btree`: a copy-on-write B+tree over fixed 4096-byte pages
  (`BTree`, `BNode`, `UpdateRequest`, `DeleteRequest`, `Mode`).
- `pagedb.btree_iter`: cursors and range seeks over the tree
  (`BIter`, `seek_le`, `seek`, `Cmp`, `cmp_ok`).
- `pagedb.free_list`: a FIFO of free page numbers kept as a linked list of
  pages (`FreeList`, `LNode`).
- `pagedb.encoding`: order-preserving encoding of typed values into keys
  (`Value`, `ValueType`, `encode_key`, `decode_key` and friends).

It needs no third-party packages.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The B+tree

A `BTree` does not own its pages. It is given three callbacks: one that
reads a page by number, one that stores a new page and returns its number,
and one that releases a page. Every change writes new pages and frees the
old ones, so the tree never modifies a page in place.

```python
import itertools

from pagedb.btree import BTree, DeleteRequest, Mode, UpdateRequest

pages = {}
numbers = itertools.count(1)

def alloc(data):
    ptr = next(numbers)
    pages[ptr] = data
    return ptr

tree = BTree(read_page=pages.__getitem__, alloc_page=alloc, free_page=pages.__delitem__)

tree.upsert(b"hello", b"world")          # True
tree.get(b"hello")                        # b"world"
tree.get(b"missing")                      # None

req = UpdateRequest(key=b"hello", val=b"again", mode=Mode.UPDATE_ONLY)
tree.update(req)                          # True; req.old == b"world", req.added is False

req = DeleteRequest(key=b"hello")
tree.delete(req)                          # True; req.old == b"again"
```

Keys are non-empty byte strings of up to 1000 bytes and values are up to
3000 bytes; anything else raises `ValueError`. `Mode.INSERT_ONLY` only adds
new keys, `Mode.UPDATE_ONLY` only changes existing ones, and `Mode.UPSERT`
does both. `update` and `delete` return whether the tree changed. Page 0
stands for "no page", so the allocator must never hand it out.

## Range seeks

```python
from pagedb.btree_iter import Cmp, seek

it = seek(tree, b"a", Cmp.GE)   # first key >= b"a"
while it.valid():
    key, val = it.deref()
    it.next()
```

`Cmp.GE` and `Cmp.GT` seek forward; `Cmp.LE` and `Cmp.LT` seek backward,
and `prev()` walks toward smaller keys. `seek_le` positions at the last
key less than or equal to the one given.

## Free list

`FreeList` records page numbers that can be reused. It is driven by three
callbacks: `read_page`, `append_page` (store a new page and return its
number) and `write_page` (return a writable buffer for an existing page).
`push_tail` adds a page, `pop_head` takes one back or returns `None`, and
items pushed since the last `set_max_seq()` call are not handed out, so a
page freed in the current change is not reused before that change is
complete. `head_page` and `tail_page` must point at an initial, zeroed list
node before use.

## Key encoding

```python
from pagedb.encoding import Value, ValueType, decode_key, encode_key

key = encode_key(100, [Value.of_int64(-5), Value.of_bytes(b"a\x00b")])
decode_key(key, [ValueType.INT64, ValueType.BYTES])
```

Encoded keys compare as bytes in the same order as the values they hold:
integers are signed 64-bit values with the sign bit flipped, and byte
strings have `0x00` and `0x01` escaped and end in a null byte. Each value
carries its type tag, and `encode_key_partial` appends the reserved
`ValueType.INF` tag for range bounds that should sort after every key with
the same leading columns.

## What it does not do

`pagedb` keeps nothing on disk by itself: where pages live, how they are
written and how a change is made durable is left to the callbacks you
pass in. It has no key-value store over a file, no meta page, no tables,
schemas, rows or secondary indexes; the encoding module only provides the
key format such a layer would use.