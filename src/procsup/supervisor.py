"""
Pool Supervisor

The control plane. Owns the worker registry and wires TimerSet,
BackoffScheduler and ReadinessTracker together to provide:

- run: spawn N workers
- crash/disconnect handling: paced replacement of dead or unhealthy workers
- reload: spawn a new generation, drain the old one once N readiness
  events from the new generation have been observed
- stop/terminate: graceful or forceful shutdown of the whole pool

All methods must be called from the event loop thread that runs the pool.
"""

import asyncio
import logging
import os
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from procsup.backoff import BackoffScheduler
from procsup.channel import ControlChannel
from procsup.config import build_config
from procsup.data import (
    CMD_DISCONNECT, CMD_LISTENING, ENV_CONTROL_FD, ENV_WORKER_ID,
    ConfigurationError, ControlEvent, ControlMessage, ControlSendFailure,
    InvalidStateTransition, PoolConfig, RunMode, SpawnFailure, WorkerState,
)
from procsup.events import ControlBus, EventChannel, Subscription
from procsup.readiness import ReadinessTracker
from procsup.timers import TimerSet
from procsup.worker import Worker


class Supervisor:
    """
    Supervises a pool of worker processes running `target`.

    Example:
        sup = Supervisor("server.py", workers=4, timeout=30, backoff=10)
        sup.on("ready", lambda worker, payload: print("ready", worker.id))
        await sup.run()
        ...
        await (await sup.reload())
        await sup.stop()

    :param target: Path of the program every worker runs
    :param config: Prebuilt PoolConfig; mutually exclusive with options
    :param logger: Logger for supervisor messages, module logger by default
    :param options: Keyword options, see procsup.config.build_config
    :raises ConfigurationError: If the target is missing or options are invalid
    """

    def __init__(
        self,
        target: Any,
        config: Optional[PoolConfig] = None,
        logger: Optional[logging.Logger] = None,
        **options: Any,
    ):
        if not target:
            raise ConfigurationError("A target path is required")
        if config is not None and options:
            raise ConfigurationError("Pass either a PoolConfig or keyword options, not both")

        self.target = os.fspath(target)
        self.config = config if config is not None else build_config(options)
        self.log = logger if logger is not None else logging.getLogger(__name__)

        # External events and internal control events travel on separate channels.
        self.events = EventChannel()
        self._control = ControlBus()

        self._workers: Dict[int, Worker] = {}
        self._mode = RunMode.STOPPED
        self._next_id = 0
        self._generation = 0

        self._respawners = TimerSet()
        self._backoff: Optional[BackoffScheduler] = None
        self._readiness = ReadinessTracker(self.config.ready_when, self._on_ready)

        self._spawning: Set[asyncio.Task] = set()
        self._reloads: List[asyncio.Future] = []
        self._retiring: Dict[Tuple[int, int], List[_Retirement]] = {}
        self._stopped: Optional[asyncio.Future] = None
        self._serving = False

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def mode(self) -> RunMode:
        return self._mode

    @property
    def is_running(self) -> bool:
        return self._mode is RunMode.RUNNING

    @property
    def is_stopping(self) -> bool:
        return self._mode is RunMode.STOPPING

    @property
    def worker_count(self) -> int:
        return self.config.workers

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def backoff(self) -> Optional[BackoffScheduler]:
        return self._backoff

    @property
    def pending_respawns(self) -> int:
        return len(self._respawners)

    def workers(self) -> List[Worker]:
        """Snapshot of every tracked worker."""
        return list(self._workers.values())

    def active_workers(self) -> List[Worker]:
        """Workers that reached readiness and are not retiring."""
        return [w for w in self._workers.values() if w.state is WorkerState.READY]

    # =========================================================================
    # Event subscription
    # =========================================================================

    def on(self, event: str, callback: Callable[..., Any]) -> Subscription:
        return self.events.on(event, callback)

    def once(self, event: str, callback: Callable[..., Any]) -> Subscription:
        return self.events.once(event, callback)

    def off(self, event: str, callback: Callable[..., Any]) -> bool:
        return self.events.off(event, callback)

    # =========================================================================
    # Public operations
    # =========================================================================

    async def run(self) -> None:
        """
        Spawn the initial generation of workers.

        :raises InvalidStateTransition: In strict mode, if not stopped
        :raises SpawnFailure: If a worker process cannot be created; the
            partially started pool is terminated first
        """
        if not self._allowed("run", RunMode.STOPPED):
            return

        loop = asyncio.get_running_loop()
        self._backoff = BackoffScheduler(self.config.respawn, self.config.backoff, loop=loop)
        self._mode = RunMode.RUNNING
        self._serving = False
        self.log.info(f"Starting {self.config.workers} worker(s) for {self.target}")

        try:
            for slot in range(self.config.workers):
                await self.spawn(slot)
        except SpawnFailure:
            self.log.error("Initial spawn failed, terminating partial pool")
            await self.terminate()
            raise

    async def reload(self, callback: Optional[Callable[[], Any]] = None) -> asyncio.Future:
        """
        Roll the pool over to a fresh generation without downtime.

        Each current worker is drained once N readiness events from the new
        generation have been observed.

        Old workers that die before their countdown fires are replaced like
        any crashed worker; the replacement inherits the pending drain.

        :param callback: Called once the new generation produced N readiness events
        :returns: Future resolved at the same moment as the callback
        :raises InvalidStateTransition: In strict mode, if not running
        :raises SpawnFailure: If a new worker cannot be created; the partial
            generation is drained and the pool keeps its current generation
        """
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        if not self._allowed("reload", RunMode.RUNNING):
            done.set_result(None)
            return done

        # Let in-flight respawns land so the snapshot below covers them.
        while self._spawning:
            await asyncio.gather(*list(self._spawning), return_exceptions=True)
        if not self._allowed("reload", RunMode.RUNNING):
            done.set_result(None)
            return done

        # A reload supersedes queued crash replacements.
        self._respawners.cancel_all()
        self._drop_orphaned_retirements()

        old = [w for w in self._workers.values() if not w.replaced]
        self._generation += 1
        generation = self._generation
        count = self.config.workers

        def of_new_generation(worker: Worker) -> bool:
            return worker.generation == generation

        retirements = []
        for worker in old:
            retirement = _Retirement(worker)
            retirement.subscription = self._control.countdown(
                ControlEvent.READY, count, partial(self._retire, retirement), predicate=of_new_generation
            )
            self._retiring.setdefault(retirement.key, []).append(retirement)
            retirements.append(retirement)

        def complete(_worker: Worker) -> None:
            if not done.done():
                done.set_result(None)
            if callback is not None:
                callback()

        completion = self._control.countdown(ControlEvent.READY, count, complete, predicate=of_new_generation)
        self._reloads.append(done)
        done.add_done_callback(self._forget_reload)

        self.log.info(f"Reloading: generation {generation} replaces {len(old)} worker(s)")
        spawned: List[Worker] = []
        try:
            for slot in range(count):
                worker = await self.spawn(slot, generation)
                spawned.append(worker)
                self.events.emit("respawn", worker)
        except SpawnFailure:
            self.log.error(f"Reload to generation {generation} failed, keeping generation {generation - 1}")
            completion.cancel()
            for retirement in retirements:
                self._drop_retirement(retirement)
            self._generation = generation - 1
            for worker in spawned:
                self.drain(worker)
            done.cancel()
            raise
        return done

    def stop(self) -> asyncio.Future:
        """
        Drain every worker and stop supervising.

        :returns: Future resolved once every worker has exited
        :raises InvalidStateTransition: In strict mode, if not running
        """
        loop = asyncio.get_running_loop()
        if not self._allowed("stop", RunMode.RUNNING):
            return _resolved(loop)

        self._begin_shutdown(loop)
        self.log.info(f"Stopping {len(self._workers)} worker(s)")
        for worker in list(self._workers.values()):
            self.drain(worker)
        return self._await_stopped()

    def terminate(self, callback: Optional[Callable[[], Any]] = None) -> asyncio.Future:
        """
        Force-kill every worker and stop supervising.

        :param callback: Called exactly once when the registry is empty
        :returns: Future resolved at the same moment as the callback
        :raises InvalidStateTransition: In strict mode, if not running
        """
        loop = asyncio.get_running_loop()
        if not self._allowed("terminate", RunMode.RUNNING):
            return _resolved(loop)

        self._begin_shutdown(loop)
        self.log.info(f"Terminating {len(self._workers)} worker(s)")
        for worker in list(self._workers.values()):
            worker.mark_replaced()
            worker.cancel_kill_timer()
            worker.state = WorkerState.DRAINING
            worker.stop_reading()
            worker.kill()

        stopped = self._await_stopped()
        if callback is not None:
            stopped.add_done_callback(lambda _: callback())
        return stopped

    # =========================================================================
    # Spawning
    # =========================================================================

    async def spawn(self, slot: int, generation: Optional[int] = None) -> Worker:
        """
        Start one worker process for `slot` and attach its watchers.

        :param slot: Slot index passed to the child as WORKER_ID
        :param generation: Generation the worker belongs to, current by default
        :returns: The registered Worker
        :raises SpawnFailure: If the OS cannot create the process
        """
        loop = asyncio.get_running_loop()
        if generation is None:
            generation = self._generation

        channel = ControlChannel.create()
        self._next_id += 1
        worker = Worker(self._next_id, slot, generation, channel)

        env = dict(os.environ)
        env.update(self.config.env)
        env[ENV_WORKER_ID] = str(slot)
        env[ENV_CONTROL_FD] = str(channel.child_fd)

        try:
            worker.process = await asyncio.create_subprocess_exec(
                self.config.executable, self.target, *self.config.args,
                env=env,
                pass_fds=(channel.child_fd,),
            )
        except (OSError, ValueError) as e:
            channel.close()
            raise SpawnFailure(slot, e) from e
        finally:
            channel.release_child()

        await channel.open()
        self._workers[worker.id] = worker
        worker.reader = asyncio.create_task(self._read_channel(worker))
        worker.waiter = asyncio.create_task(self._wait_exit(worker))
        loop.call_soon(self._on_online, worker)
        self.log.debug(f"Spawned worker {worker.id} (slot {slot}, generation {generation}, pid {worker.pid})")
        return worker

    def _schedule_replacement(self, worker: Worker) -> None:
        if not worker.mark_replaced():
            return
        if self._mode is not RunMode.RUNNING:
            return
        # A pending reload drain moves on to whichever worker fills the slot next.
        for retirement in self._retiring.get((worker.generation, worker.slot), ()):
            retirement.worker = None

        delay = self._backoff.next_delay()
        if self.config.log:
            self.log.warning(f"Worker {worker.id} (slot {worker.slot}) died, respawning in {delay:.3f}s")
        loop = asyncio.get_running_loop()
        self._respawners.call_later(loop, delay, self._start_respawn, worker.slot, worker.generation)

    def _start_respawn(self, slot: int, generation: int) -> None:
        if self._mode is not RunMode.RUNNING:
            return
        task = asyncio.get_running_loop().create_task(self._respawn(slot, generation))
        self._spawning.add(task)
        task.add_done_callback(self._respawn_done)

    def _respawn_done(self, task: asyncio.Task) -> None:
        self._spawning.discard(task)
        self._maybe_finish_stop()

    async def _respawn(self, slot: int, generation: int) -> None:
        try:
            worker = await self.spawn(slot, generation)
        except SpawnFailure as e:
            self.log.error(f"Respawn of slot {slot} failed: {e}")
            for retirement in list(self._retiring.get((generation, slot), ())):
                self._drop_retirement(retirement)
            self.events.emit("error", e)
            return

        if self._mode is not RunMode.RUNNING:
            self.drain(worker)
            return

        retirements = self._retiring.get((generation, slot), [])
        if any(r.fired for r in retirements):
            self.log.debug(f"Slot {slot} of generation {generation} was retired while respawning")
            for retirement in list(retirements):
                self._drop_retirement(retirement)
            self.drain(worker)
            return
        for retirement in retirements:
            retirement.worker = worker
        self.events.emit("respawn", worker)

    # =========================================================================
    # Lifecycle signals
    # =========================================================================

    async def _read_channel(self, worker: Worker) -> None:
        async for payload in worker.channel.messages():
            self._on_message(worker, payload)
        self._on_disconnect(worker)

    async def _wait_exit(self, worker: Worker) -> None:
        code = await worker.process.wait()
        self._on_exit(worker, code)

    def _on_online(self, worker: Worker) -> None:
        if worker.state is not WorkerState.SPAWNING:
            return
        worker.state = WorkerState.ONLINE
        self.events.emit("online", worker)
        self._readiness.online(worker)

    def _on_message(self, worker: Worker, payload: ControlMessage) -> None:
        cmd = payload.get("cmd")
        if cmd == CMD_LISTENING:
            address = payload.get("address")
            if isinstance(address, list):
                address = tuple(address)
            worker.address = address
            self.events.emit("listening", worker, address)
            self._readiness.listening(worker, address)
        elif cmd == CMD_DISCONNECT:
            self._on_disconnect(worker)
        else:
            self.events.emit("message", worker, payload)
            self._readiness.message(worker, payload)

    def _on_ready(self, worker: Worker, payload: Any) -> None:
        self._serving = True
        self.events.emit("ready", worker, payload)
        self._control.publish(ControlEvent.READY, worker)

    def _on_disconnect(self, worker: Worker) -> None:
        if not worker.disconnected:
            worker.disconnected = True
            self.events.emit("disconnect", worker)
        if worker.replaced or worker.state is WorkerState.EXITED:
            return
        # The worker declared itself unusable; it may never exit on its own.
        self._schedule_replacement(worker)
        self.drain(worker)

    def _on_exit(self, worker: Worker, code: Optional[int]) -> None:
        if worker.state is WorkerState.EXITED:
            return
        worker.state = WorkerState.EXITED
        worker.exit_code = code
        worker.cancel_kill_timer()
        worker.channel.close()
        self._workers.pop(worker.id, None)
        self.log.debug(f"Worker {worker.id} (pid {worker.pid}) exited with code {code}")

        self.events.emit("exit", worker)

        if not worker.replaced:
            self._schedule_replacement(worker)
        self._check_serving()
        self._maybe_finish_stop()

    # =========================================================================
    # Drain
    # =========================================================================

    def drain(self, worker: Worker) -> None:
        """
        Retire a worker: disconnect signal, channel close, timed force-kill.

        A worker that is already draining or has exited is left alone.
        """
        worker.mark_replaced()
        if worker.state in (WorkerState.DRAINING, WorkerState.EXITED):
            return
        worker.state = WorkerState.DRAINING

        try:
            worker.send({"cmd": CMD_DISCONNECT})
        except ControlSendFailure:
            self.log.debug(f"Worker {worker.id} control channel already closed")
        worker.channel.close()

        loop = asyncio.get_running_loop()
        if self.config.timeout > 0:
            worker.kill_timer = loop.call_later(self.config.timeout, self._force_kill, worker)
        else:
            worker.kill_timer = loop.call_soon(self._force_kill, worker)
        self.log.debug(f"Draining worker {worker.id}, force-kill in {self.config.timeout}s")
        self._check_serving()

    def _retire(self, retirement: "_Retirement", _ready: Worker) -> None:
        retirement.fired = True
        worker = retirement.worker
        if worker is None:
            # The slot is being respawned; the replacement is drained on arrival.
            return
        self._drop_retirement(retirement)
        if worker.is_alive:
            self.drain(worker)

    def _drop_retirement(self, retirement: "_Retirement") -> None:
        if retirement.subscription is not None:
            retirement.subscription.cancel()
        pending = self._retiring.get(retirement.key)
        if pending is None:
            return
        if retirement in pending:
            pending.remove(retirement)
        if not pending:
            del self._retiring[retirement.key]

    def _drop_orphaned_retirements(self) -> None:
        """Forget drains whose slot replacement will never arrive."""
        for pending in list(self._retiring.values()):
            for retirement in list(pending):
                if retirement.worker is None:
                    self._drop_retirement(retirement)

    def _force_kill(self, worker: Worker) -> None:
        worker.kill_timer = None
        if not worker.is_alive:
            return
        if worker.kill():
            self.log.warning(f"Worker {worker.id} (pid {worker.pid}) did not exit after drain, killed")

    # =========================================================================
    # Shutdown helpers
    # =========================================================================

    def _allowed(self, operation: str, *modes: RunMode) -> bool:
        if self._mode in modes:
            return True
        if self.config.loose:
            self.log.debug(f"Ignoring {operation} while {self._mode.value}")
            return False
        raise InvalidStateTransition(operation, self._mode)

    def _begin_shutdown(self, loop: asyncio.AbstractEventLoop) -> None:
        self._mode = RunMode.STOPPING
        self._respawners.cancel_all()
        if self._backoff is not None:
            self._backoff.close()
        self._control.clear()
        self._retiring.clear()
        for pending in list(self._reloads):
            pending.cancel()
        self._stopped = loop.create_future()

    def _await_stopped(self) -> asyncio.Future:
        stopped = self._stopped
        if not self._workers and not self._spawning:
            asyncio.get_running_loop().call_soon(self._maybe_finish_stop)
        return stopped

    def _maybe_finish_stop(self) -> None:
        if self._mode is not RunMode.STOPPING or self._workers or self._spawning:
            return
        self._mode = RunMode.STOPPED
        self._serving = False
        self.log.info("All workers exited, supervisor stopped")
        self.events.emit("stopped")
        if self._stopped is not None and not self._stopped.done():
            self._stopped.set_result(None)

    def _forget_reload(self, future: asyncio.Future) -> None:
        try:
            self._reloads.remove(future)
        except ValueError:
            pass

    def _check_serving(self) -> None:
        if self._mode is not RunMode.RUNNING or not self._serving:
            return
        if not self.active_workers():
            self._serving = False
            self.log.warning("No ready workers left")
            self.events.emit("no-ready")


def _resolved(loop: asyncio.AbstractEventLoop) -> asyncio.Future:
    future = loop.create_future()
    future.set_result(None)
    return future


class _Retirement:
    """
    A reload's pending drain of one old slot.

    Follows the slot across crash replacements: `worker` is None while a
    replacement is being respawned.
    """

    def __init__(self, worker: Worker):
        self.key = (worker.generation, worker.slot)
        self.worker: Optional[Worker] = worker
        self.subscription: Optional[Subscription] = None
        self.fired = False
