import json
import logging

import httpx

from melodymint.platform.config import settings

logger = logging.getLogger(__name__)


class IPFSClient:
    """Content-addressed storage: ``store`` returns a CID, ``resolve`` a gateway URL."""

    def __init__(
        self,
        api_url: str | None = None,
        gateway_url: str | None = None,
        provider: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._provider = (provider or settings.ipfs_provider or "kubo").strip().lower()
        self._api_url = (api_url or settings.ipfs_api_url).rstrip("/")
        self._gateway_url = (gateway_url or settings.ipfs_gateway_url).rstrip("/")
        self._pinata_api_url = (settings.pinata_api_url or "https://api.pinata.cloud").rstrip("/")
        self._pinata_jwt = settings.pinata_jwt
        self._transport = transport

    async def store(self, data: bytes, filename: str) -> str:
        """Pin uploaded audio or cover art; the returned CID is what `POST /tracks` registers."""
        if not data:
            raise ValueError("Refusing to store empty content")

        if self._provider == "pinata":
            cid = await self._store_pinata(data, filename)
        else:
            cid = await self._store_kubo(data, filename)

        logger.info("Stored %s (%d bytes) on IPFS as %s", filename, len(data), cid)
        return cid

    def resolve(self, cid: str) -> str:
        cid = (cid or "").strip()
        if not cid:
            raise ValueError("CID is required")
        return f"{self._gateway_url}/{cid}"

    async def _store_kubo(self, data: bytes, filename: str) -> str:
        files = {"file": (filename, data, "application/octet-stream")}

        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            response = await client.post(f"{self._api_url}/api/v0/add", params={"pin": "true"}, files=files)
            response.raise_for_status()

        cid = self._last_hash_in_ndjson(response.text)
        if not cid:
            raise RuntimeError("IPFS add did not return a CID")
        return cid

    async def _store_pinata(self, data: bytes, filename: str) -> str:
        if not self._pinata_jwt:
            raise RuntimeError("PINATA_JWT is required when IPFS_PROVIDER=pinata")

        headers = {"Authorization": f"Bearer {self._pinata_jwt}"}
        files = {"file": (filename, data, "application/octet-stream")}

        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            response = await client.post(f"{self._pinata_api_url}/pinning/pinFileToIPFS", headers=headers, files=files)
            response.raise_for_status()
            payload = response.json()

        cid = payload.get("IpfsHash")
        if not isinstance(cid, str) or not cid:
            raise RuntimeError("Pinata upload did not return IpfsHash")
        return cid

    @staticmethod
    def _last_hash_in_ndjson(body: str) -> str:
        # Kubo streams one JSON object per line; the wrapping entry comes last.
        for line in reversed([line.strip() for line in body.splitlines() if line.strip()]):
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue

            cid = payload.get("Hash")
            if isinstance(cid, str) and cid:
                return cid

        return ""
