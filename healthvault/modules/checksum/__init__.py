from healthvault.modules.checksum.service import ChecksumService

__all__ = ["ChecksumService"]
