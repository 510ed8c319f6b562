#!/usr/bin/env python3
"""
examples/hello_pool.py

Runs a pool of echo workers, crashes one of them, reloads the pool and
shuts it down again.
"""

import asyncio
import logging
from pathlib import Path

from procsup import Supervisor

WORKER = Path(__file__).resolve().parent / "echo_worker.py"


async def echo_once(address, text: str) -> str:
    reader, writer = await asyncio.open_connection(*address)
    writer.write(text.encode())
    await writer.drain()
    data = await reader.read(100)
    writer.close()
    await writer.wait_closed()
    return data.decode()


async def main():
    """Main entry point."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    print("=== Hello Pool Example ===\n")

    sup = Supervisor(WORKER, workers=3, respawn=0.5, backoff=5, timeout=2)
    ready = asyncio.Event()
    sup.on("ready", lambda worker, address: print(f"ready: {worker} at {address}"))
    sup.on("exit", lambda worker: print(f"exit: {worker} code={worker.exit_code}"))

    def all_ready(*_):
        if len(sup.active_workers()) == 3:
            ready.set()

    sup.on("ready", all_ready)

    # Test 1: Start the pool
    print("Test 1: Starting 3 workers")
    await sup.run()
    await ready.wait()
    for worker in sup.active_workers():
        print(f"  slot {worker.slot} echoes: {await echo_once(worker.address, 'ping')}")

    # Test 2: Kill a worker, the supervisor respawns it
    print("\nTest 2: Killing one worker")
    victim = sup.active_workers()[0]
    respawned = asyncio.Event()
    sup.once("respawn", lambda worker: respawned.set())
    victim.kill()
    await respawned.wait()
    print(f"  slot {victim.slot} replaced")

    # Test 3: Roll over to a new generation
    print("\nTest 3: Reloading")
    done = await sup.reload(lambda: print("  new generation is ready"))
    await done
    print(f"  generation {sup.generation}: {sup.workers()}")

    # Test 4: Graceful shutdown
    print("\nTest 4: Stopping")
    await sup.stop()
    print(f"  supervisor is {sup.mode.value}")


if __name__ == "__main__":
    asyncio.run(main())
