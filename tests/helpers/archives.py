"""
Builders for fake server archives.

The archives are laid out like real mongod releases
(<name>/bin/mongod plus companions) but the "server" is a small Python
program that listens on --port, so the supervisor can be tested end to end
without downloading anything.
"""
from __future__ import annotations

import io
import sys
import tarfile
import time
import zipfile

import zstandard as zstd

# Listens on --port/--bind_ip, exits cleanly on SIGTERM.
FAKE_SERVER = '''\
import argparse
import signal
import socket
import sys


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, required=True)
    parser.add_argument("--bind_ip", default="127.0.0.1")
    parser.add_argument("--dbpath")
    args, _ = parser.parse_known_args()
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    family = socket.AF_INET6 if ":" in args.bind_ip else socket.AF_INET
    server = socket.socket(family, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((args.bind_ip, args.port))
    server.listen(16)
    print(f"waiting for connections on port {args.port}", flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()


if __name__ == "__main__":
    main()
'''

# Exits before ever listening.
CRASHING_SERVER = '''\
import sys

print("exception in initAndListen: 98 Unable to lock file", flush=True)
sys.exit(100)
'''

# Never listens; records its pid next to the script so tests can check it was killed.
HANGING_SERVER = '''\
import os
import time

with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), "last.pid"), "w") as f:
    f.write(str(os.getpid()))
print("starting", flush=True)
while True:
    time.sleep(1)
'''

# Listens like FAKE_SERVER but ignores SIGTERM, forcing the supervisor to kill it.
STUBBORN_SERVER = FAKE_SERVER.replace(
    'signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))',
    'signal.signal(signal.SIGTERM, signal.SIG_IGN)',
)


def launcher_script() -> str:
    """Shell wrapper standing in for the mongod binary; runs mongod.py next to it."""
    return f'#!/bin/sh\nexec "{sys.executable}" "$(dirname "$0")/mongod.py" "$@"\n'


def archive_members(root: str, server_source: str, *, executable_name: str = "mongod"):
    """(name, content, mode) triples of a fake release archive."""
    return [
        (f"{root}/bin/{executable_name}", launcher_script().encode(), 0o755),
        (f"{root}/bin/mongod.py", server_source.encode(), 0o644),
        (f"{root}/bin/mongo", b"#!/bin/sh\nexit 0\n", 0o755),
        (f"{root}/README", b"fake release for tests\n", 0o644),
    ]


def build_archive(members, fmt: str = "tgz") -> bytes:
    """
    Pack (name, content, mode) triples.

    Args:
        members: Iterable of (name, content, mode)
        fmt: "tgz", "tar", "zip" or "tar.zst"
    """
    members = list(members)
    if fmt == "zip":
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, content, mode in members:
                info = zipfile.ZipInfo(name)
                info.external_attr = (0o100000 | mode) << 16
                archive.writestr(info, content)
        return buf.getvalue()

    buf = io.BytesIO()
    mode = "w:gz" if fmt == "tgz" else "w"
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        dirs = sorted({name.rsplit("/", 1)[0] for name, _, _ in members if "/" in name})
        for d in dirs:
            info = tarfile.TarInfo(d)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content, file_mode in members:
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = file_mode
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(content))
    data = buf.getvalue()
    if fmt == "tar.zst":
        return zstd.ZstdCompressor(level=3).compress(data)
    return data


def fake_release(root: str, server_source: str = FAKE_SERVER, *, fmt: str = "tgz", executable_name: str = "mongod") -> bytes:
    return build_archive(archive_members(root, server_source, executable_name=executable_name), fmt)
