"""TalentGate: feature entitlements and usage metering for the recruiting platform."""

__version__ = "0.1.0"
