"""Priority job queue runtime: store, scheduler, executor and runner.

The runner (dispatcher) and the per-job workers it spawns never talk to each
other directly. Every hand-off goes through the persisted job status:

- the runner claims a WAITING job by moving it to STARTING and spawns
  ``jobqueue run <id>`` detached;
- the worker confirms RUNNING with the real pid of the command it launched
  and records DONE/FAILED when the command exits;
- whoever finds a record that no live process backs (stalled RUNNING,
  orphaned STARTING) repairs it through the same guarded transitions.

Because the coupling is only the store, a runner restart does not lose
in-flight jobs: the next runner reconciles them on startup.
"""
