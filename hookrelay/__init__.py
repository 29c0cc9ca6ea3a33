"""hookrelay — webhook receiver with real-time dashboard streaming.

Receives task-platform webhooks, verifies them, logs them to Postgres,
and fans them out to dashboard clients over Server-Sent Events.
"""

__version__ = "2.0.0"
