"""
sdcadm - rolling agent updates for a SmartDataCenter style control plane.

Plans agent image updates from the fleet inventory and drives them across
servers through CNAPI install-agent tasks.
"""

__version__ = "1.0.0"
__description__ = "Agent update orchestration for SDC compute nodes"
