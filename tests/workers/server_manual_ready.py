"""Worker that announces readiness explicitly after a short warm-up."""

import anyio

from procsup import child


async def main():
    async with child.connect() as control:
        await control.send({"cmd": "hello", "worker_id": child.worker_id()})
        await anyio.sleep(0.05)
        await control.ready()
        await control.wait_disconnect()


if __name__ == "__main__":
    anyio.run(main)
