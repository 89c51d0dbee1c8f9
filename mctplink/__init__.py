"""MCTP packet headers with serial, SMBus and PCIe VDM framing bindings."""

__version__ = "0.1.0"
__all__ = ["packet", "serial", "smbus", "nupcie"]