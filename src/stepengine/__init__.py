"""
Resumable step execution: a step is ticked repeatedly by an external scheduler, keeps all
its memory in a state store between ticks, and reports a `StepResult` telling whether to
tick again.
"""

from stepengine.version import __version__
