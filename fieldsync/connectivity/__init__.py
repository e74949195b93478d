from fieldsync.connectivity.detector import ConnectivityDetector, ConnectivityStatus

__all__ = ["ConnectivityDetector", "ConnectivityStatus"]
