"""Location and biometric verification for attendance punches."""
