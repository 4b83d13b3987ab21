"""
encodeflow: encoding orchestration engine.

Turns versioned preset definitions into FFmpeg command specifications,
supervises the resulting processes under bounded concurrency, and drives
each job through an explicit life-cycle state machine.

Subpackages:
- presets: preset model, validation, versioned registry
- media: source descriptors and the probe collaborator
- commands: deterministic command builder
- execution: process runner, process-tree control, progress parsing
- jobs: job model, state machine, scheduler, retry policy, hooks
- routes: HTTP control surface
"""

__version__ = "0.4.0"
