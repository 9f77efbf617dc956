from sfbulk.config.client_config import (
    ClientConfig,
    CompressionConfig,
    load_client_config,
)

__all__ = ["ClientConfig", "CompressionConfig", "load_client_config"]
