"""Gateway services: metering, payments, access gating and completion orchestration."""
