"""ReconSweep: network reconnaissance and vulnerability assessment engine."""

__version__ = "1.0.0"
