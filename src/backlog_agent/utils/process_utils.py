"""Signal delivery to supervised agent subprocesses."""

import os
import signal


def kill_process_tree(pid: int, sig: int = signal.SIGTERM) -> None:
    """Send ``sig`` to the process group of ``pid``, falling back to the pid.

    Agent CLIs are spawned with start_new_session=True so killpg also reaches
    the tool subprocesses they fork (git, test runners, gh).
    """
    try:
        os.killpg(os.getpgid(pid), sig)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
