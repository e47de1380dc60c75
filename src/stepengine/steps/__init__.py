"""
The step contract shared by all concrete steps.

The submodules are:
 - params -- declaration, validation and typed access of step parameters
 - api -- the `Step` protocol and the services registry
 - contract -- the tick boundary decorator every `Step.execute` is wrapped with
 - telemetry -- the per-tick property bag
"""
