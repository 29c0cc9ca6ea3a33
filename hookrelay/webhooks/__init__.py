"""Webhook inbound system.

Handles the X-Hook-Secret handshake, X-Hook-Signature verification, and
ingestion of event batches into history, persistence, and the broadcaster.
"""
