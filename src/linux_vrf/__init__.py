"""Linux VRF lifecycle management and verification.

This package manages VRF routing domains on a Linux host and audits the live
kernel state against the layout they are supposed to have.  It covers:

* creating and deleting VRF devices bound to a caller-chosen table id;
* installing the unreachable IPv4/IPv6 default routes that stop lookups from
  falling out of a VRF table;
* maintaining the per-VRF oif/iif policy rules on kernels that lack the
  consolidated ``l3mdev`` rule;
* classifying tasks into VRFs through the l3mdev control group hierarchy; and
* verifying tables, routes and rules and reporting every discrepancy.

Kernel access goes through :class:`linux_vrf.gateway.KernelGateway` so the
logic can be unit tested without root privileges or a real network stack.
"""

from .lifecycle import VrfManager  # noqa: F401
from .verify import VerificationReport, Verifier  # noqa: F401

__all__ = ["VerificationReport", "Verifier", "VrfManager"]
