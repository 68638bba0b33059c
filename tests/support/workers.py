"""Workers used by the test suite"""

import os
import signal
import time

from keeper.process import BaseWorker


class Mailer(BaseWorker):
    def run_process(self, process):
        process.pipe.send(("ready", process.pid, self.container))


class Indexer(BaseWorker):
    def run_process(self, process):
        process.pipe.send_bytes(process.name.encode())


class Sleeper(BaseWorker):
    """Runs until terminated"""

    def run_process(self, process):
        process.pipe.send("sleeping")
        while True:
            time.sleep(0.05)


class Reloadable(BaseWorker):
    """Reports reloads back to the master, exits on request"""

    def run_process(self, process):
        self.running = True
        process.pipe.send("ready")
        while self.running:
            time.sleep(0.05)

    def reload(self, process):
        process.pipe.send("reloaded")
        self.running = False


class Echo(BaseWorker):
    """Answers every message from the master through its event loop"""

    async_io = True

    def run_process(self, process):
        process.pipe.send("ready")

    def io_event(self, process):
        message = process.pipe.recv()
        if message == "quit":
            process.loop.stop()
        else:
            process.pipe.send(f"echo: {message}")


class SelfKiller(BaseWorker):
    def run_process(self, process):
        os.kill(os.getpid(), signal.SIGKILL)


NotAWorker = object
