"""Stateful Group Reconciler (SGR).

Control loop for a regional managed instance group whose instances each own
a durable data disk:
 - scale to a declared size, keeping one disk per slot across replacements
 - bounded-disruption template rollouts (surge / unavailable budgets)
 - auto-healing driven by TCP/HTTP health probes
 - backend-service membership for an internal load balancer

The compute API is pluggable: an in-memory zone for local runs and tests,
or Compute Engine.
"""
