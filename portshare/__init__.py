"""Shared-secret device pairing, trusted-peer storage, direct-mode management and Clash/Mihomo egress control for a tailnet."""

__version__ = "0.1.0"