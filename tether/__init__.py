"""
tether: controller/agent pair for lab environments.

The controller tracks connected agents and drives remote commands against
them; each agent keeps one outbound connection to the controller alive.
"""

__version__ = "0.2.0"
