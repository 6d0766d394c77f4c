from __future__ import annotations

import io

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    if not b:
        raise ValueError("empty payload")

    # Payloads arrive from untrusted links; refuse trailing garbage.
    fp = io.BytesIO(bytes(b))
    obj = cbor2.CBORDecoder(fp).decode()
    rest = len(b) - fp.tell()
    if rest:
        raise ValueError(f"{rest} trailing bytes after CBOR item")
    return obj
