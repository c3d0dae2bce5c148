"""Session orchestrator for unattended CLI agent runs.

Why not a generic job scheduler?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
A session runs one task at a time on one machine, and each task hands its
work to an external CLI agent that may run for tens of minutes.  The parts
that matter are specific to that shape of work:

- Dependency ordering of a small, hand-written task file, with cycles
  rejected up front and a deterministic order so a checkpoint can be resumed.
- A wall-clock budget checked before every task.
- Agent-specific failure classification from stderr (usage limits, rate
  limits, timeouts, auth/resource exhaustion) driving a retry policy whose
  waits can last hours.
- Checkpoint files that let a crashed or interrupted session pick up where
  it stopped.

The plain resolve -> execute -> validate -> commit loop in session.py covers
that without a broker or a database.
"""
