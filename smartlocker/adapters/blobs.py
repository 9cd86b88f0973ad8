import asyncio
import uuid
from pathlib import Path

"""
Blob store local para la evidencia fotografica del drop-off.
upload() devuelve una referencia opaca; resolve() la convierte en URL.
"""


class LocalBlobStore:
    def __init__(self, root: str, base_url: str = "/blobs"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def upload(self, data: bytes) -> str:
        reference = f"parcels/{uuid.uuid4().hex}"
        target = self.root / reference
        await asyncio.to_thread(self._save, target, data)
        return reference

    @staticmethod
    def _save(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def resolve(self, reference: str) -> str:
        return f"{self.base_url}/{reference}"
