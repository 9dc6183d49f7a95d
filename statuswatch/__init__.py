"""statuswatch — service health-monitoring engine."""

__version__ = "0.1.0"
