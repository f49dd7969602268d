"""Asynchronous bulk message dispatcher with paced delivery and job tracking.

This package accepts a request to deliver one text message to many
recipients through a connected messaging session, runs the sends in the
background and exposes the live progress of every job:

- Validation of submissions (1 to 100 recipients, non-empty message)
- One detached dispatch task per job, paced by a configurable delay
- Per-recipient outcome log with failure isolation
- Bounded in-memory job store, pruned to the newest records
- Prometheus metrics for monitoring
- FastAPI REST API for submission and status queries

Example:
    Basic usage with the FastAPI application::

        from bulk_dispatch.engine import BulkDispatchEngine
        from bulk_dispatch.sessions import GatewaySession, SessionRegistry
        from bulk_dispatch.api import create_app

        sessions = SessionRegistry([GatewaySession("sales", "http://gateway:3000/api/whatsapp")])
        app = create_app(BulkDispatchEngine(), sessions, api_token="secret")

Authors:
    Softwell S.r.l.
"""
