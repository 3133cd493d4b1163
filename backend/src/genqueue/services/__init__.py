"""Domain services for admission, lifecycle and metering."""
