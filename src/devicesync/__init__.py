"""DeviceSync - keeps a local store in sync with a remote coordination backend."""

__version__ = "0.1.0"
