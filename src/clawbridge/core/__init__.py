"""clawbridge.core — configuration, constants, exceptions and logging."""
