"""Milestone Escrow Service - quorum-gated milestone payments for client/freelancer jobs."""

__version__ = "0.1.0"
