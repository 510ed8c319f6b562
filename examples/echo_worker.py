#!/usr/bin/env python3
"""
examples/echo_worker.py

A TCP echo server meant to run under a procsup Supervisor.
Every worker binds its own port and reports it over the control channel.
"""

import anyio
from anyio.abc import SocketAttribute, SocketStream

from procsup import child


async def echo(stream: SocketStream):
    async with stream:
        async for chunk in stream:
            await stream.send(chunk)


async def main():
    async with child.connect() as control:
        listener = await anyio.create_tcp_listener(local_host="127.0.0.1", local_port=0)
        async with anyio.create_task_group() as tg:
            tg.start_soon(listener.serve, echo)
            address = listener.listeners[0].extra(SocketAttribute.local_address)
            print(f"[worker {child.worker_id()}] Listening on {address[0]}:{address[1]}")
            await control.listening(address)

            await control.wait_disconnect()
            print(f"[worker {child.worker_id()}] Draining")
            tg.cancel_scope.cancel()
        await listener.aclose()


if __name__ == "__main__":
    anyio.run(main)
