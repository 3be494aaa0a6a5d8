# litefs

Building blocks of a replicated SQLite file system, for use from Python.

## Modules

- `litefs.chunk`: `ChunkWriter` and `ChunkReader` frame a byte stream of unknown length
  into chunks of at most 65535 bytes, each preceded by a 2-byte big-endian length. A
  zero-length chunk ends the stream; `ChunkWriter.close()` writes it, and closing twice
  writes it once. A stream that ends before the end marker raises `EOFError`.
- `litefs.ioutil`: `read_full_at(reader, size, offset)` reads exactly `size` bytes from a
  seekable file or a file descriptor and raises `EOFError` (with the bytes read so far in
  its `partial` attribute) if the data ends early. `sync_path` fsyncs a path such as a
  directory. `close_quietly` closes an object and ignores errors that only say it was
  already closed.
- `litefs.lease`: `StaticLeaser` and `StaticLease` for a cluster whose primary is fixed by
  configuration. On the primary, `acquire()` returns a lease and `primary_info()` raises
  `NoPrimaryError`; on a replica, `acquire()` raises `PrimaryExistsError` and
  `primary_info()` returns a `PrimaryInfo` with the hostname and advertise URL. A static
  lease was renewed at the Unix epoch and expires on 1 January 3000; it cannot be handed off.
- `litefs.files`: `parse_filename` and `file_type_filename` map names such as `db-journal`,
  `db-wal`, `db-shm`, `db-pos` and `db-lock` to a database name and a `FileType`.
  `to_error` wraps "not found" errors and `ReadOnlyReplicaError` in a `FuseError` carrying
  `ENOENT` or `EACCES`. `format_lag`, `lag_mtime`, `format_pos`, `read_pos` and
  `format_primary` build the contents of the `.lag`, `-pos` and `.primary` files.
- `litefs.posmap`: `Pos`, `read_pos_map` and `write_pos_map` for the binary position map
  (names written in sorted order), `format_txid`/`parse_txid` and
  `format_node_id`/`parse_node_id` for 16-digit hex identifiers, and `compile_match`, which
  turns an asterisk wildcard into a regular expression over the whole path.
- `litefs.client`: `Client` talks to a node's HTTP API: `promote`, `handoff`, `import_db`,
  `export_db`, `info`, `acquire_halt_lock`, `release_halt_lock`, `commit` and `stream`.
  A 409 answer raises `NotEligibleError`; a 404 on export raises `DatabaseNotFoundError`.
  `RemoteTx` sends a transaction as a chunked stream and waits for a zero status word.
- `litefs.backup_client`: `BackupClient(store, url)` talks to a backup service:
  `pos_map`, `write_tx` (returns the service's high-water mark) and `fetch_snapshot`.
  A position mismatch raises `PosMismatchError`; other failures raise `BackupClientError`.
  The store object must provide `cluster_id()`.
- `litefs.proxy`: `ProxyServer(store)` sits in front of an application. Writes on a
  replica get a `fly-replay` header naming the primary; reads carrying a `__txid` cookie
  wait until the tracked database reaches that transaction (or time out with 504);
  `/litefs/health` returns 503 when replication lag exceeds `max_lag`. The store object
  must provide `lag()`, `db(name)` (whose result has `pos()`) and `primary_info()`.
- `litefs.nodes`: `DatabaseNode`, `JournalNode`, `SHMNode` and `WALNode` with their
  handles, reporting an `Attr` and passing reads, writes, syncs, truncation and
  `LockKind`/`FileLock` lock requests to a database object.
- `litefs.lock_node`: `LockNode` and `LockHandle`, which hold at most one halt lock on the
  primary per handle.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

Chunked streams:

```python
import io
from litefs.chunk import ChunkReader, ChunkWriter

buf = io.BytesIO()
writer = ChunkWriter(buf)
writer.write(b"hello world")
writer.close()

buf.seek(0)
assert ChunkReader(buf).read(-1) == b"hello world"
```

A static lease:

```python
from litefs.lease import StaticLeaser

leaser = StaticLeaser(True, "localhost", "http://localhost:20202")
lease = leaser.acquire()
print(lease.renewed_at(), lease.ttl())
```

Position maps:

```python
import io
from litefs.posmap import Pos, read_pos_map, write_pos_map

buf = io.BytesIO()
write_pos_map(buf, {"db": Pos(txid=2, post_apply_checksum=0x80000000000007D0)})
buf.seek(0)
print(read_pos_map(buf))
```

Wildcard matching for proxy passthrough paths:

```python
from litefs.posmap import compile_match

assert compile_match("/build/*").match("/build/foo")
```

## What this package does not do

- It does not mount a file system. The node and handle classes hold the per-file logic,
  but there is no directory node: looking up, creating, removing and listing files in the
  mount is not provided, and nothing connects the nodes to a kernel interface.
- It has no store or database implementation. The nodes, the proxy and the backup client
  work against objects you supply with the methods named above.
- It has no server for the node HTTP API; `Client` only speaks to one.
- It installs no command-line program.