"""clawbridge.cli — Click entry point and command implementations."""
