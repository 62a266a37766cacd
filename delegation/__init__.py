"""Delegation Orchestrator - remote job execution in disposable VMs.

Accepts job manifests, provisions an isolated environment per job and tracks
the job through status callbacks until its environment is reclaimed.
"""

__version__ = "0.1.0"
