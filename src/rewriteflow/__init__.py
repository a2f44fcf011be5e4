"""
rewriteflow: Resumable Orchestrator for Per-Scene Rewrite Jobs.

Drives a remote rewrite engine's job queue through a fixed phase sequence:
probe the source, plan the blast radius of the requested notes, enqueue one
job per scene, process the jobs one at a time, verify continuity, widen the
scope when verification fails, and assemble the final artifact.

Key Features:
- Resume after restart via a persisted run identity
- Rolling-average ETA with a smoothed progress percentage
- Bounded, deterministic scope expansion on verification failure
- Reducer-driven pipeline state that is easy to observe and test

Example:
    from rewriteflow.engine import EngineClient
    from rewriteflow.orchestrator import RewriteOrchestrator

    async with EngineClient(base_url=url, access_token=token) as engine:
        orchestrator = RewriteOrchestrator(engine)
        ctx = orchestrator.new_context("doc-1", "ver-7", notes=notes)
        state = await orchestrator.run(ctx)
"""

from rewriteflow.version import __version__

__all__ = [
    "__version__",
]
