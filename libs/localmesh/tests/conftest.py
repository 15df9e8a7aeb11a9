"""Shared fakes for subprocess-driven tests."""

import asyncio


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, exit_after=None, exit_code=1, ignore_terminate=False):
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()
        if exit_after is not None:
            asyncio.get_running_loop().call_later(exit_after, self.exit, exit_code)

    def exit(self, code):
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeRunner:
    """
    Process runner returning FakeProcess objects.

    `factory(attempt)` builds the process for each call (attempt counts from
    1) and may raise to simulate a spawn failure.
    """

    def __init__(self, factory):
        self.factory = factory
        self.calls = []
        self.outputs = []
        self.processes = []

    async def __call__(self, args, stdout=None, stderr=None):
        self.calls.append(list(args))
        self.outputs.append((stdout, stderr))
        process = self.factory(len(self.calls))
        self.processes.append(process)
        return process
