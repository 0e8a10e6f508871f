"""Keep an Android app exempt from Doze and battery optimization."""

__version__ = "0.3.0"
