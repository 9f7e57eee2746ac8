"""
renderq - durable render-job orchestration with push notifications.

Submits long-running render jobs, tracks them in a relational job store,
executes them on competing workers and notifies waiting callers over a
resilient pub/sub channel with polling fallback.

Quick start::

    from renderq.core.container import RenderqContainer

    with RenderqContainer() as c:
        job_id = c.admission.submit("user-1", {"scene": {...}, "config": {...}})
        event = c.waiters.wait_for_completion(job_id, timeout=30)
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
