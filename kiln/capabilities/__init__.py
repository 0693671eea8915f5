"""Capabilities — host operations injected into the sandbox as ``external_apis``."""

from .registry import Capability, CapabilityFn, CapabilityRegistry

__all__ = ["Capability", "CapabilityFn", "CapabilityRegistry"]
