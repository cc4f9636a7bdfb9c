"""TreeVault blob storage gateway."""

from treevault.storage.gateway import BlobGateway, LocalBlobGateway

__all__ = ["BlobGateway", "LocalBlobGateway"]
