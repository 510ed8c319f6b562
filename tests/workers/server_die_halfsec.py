"""Worker that crashes half a second after it started listening."""

import anyio
from anyio.abc import SocketAttribute

from procsup import child


async def main():
    async with child.connect() as control:
        listener = await anyio.create_tcp_listener(local_host="127.0.0.1", local_port=0)
        async with listener:
            await control.listening(listener.listeners[0].extra(SocketAttribute.local_address))
            await anyio.sleep(0.5)
    raise SystemExit(1)


if __name__ == "__main__":
    anyio.run(main)
