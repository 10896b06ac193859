from base64 import b64decode, b64encode
from email.utils import formatdate, parsedate_to_datetime
from hashlib import sha256
from hmac import HMAC
from json import dumps
from typing import AsyncGenerator, Tuple, List, Optional
from xml.etree import ElementTree

from aiohttp import ClientResponse, ClientSession, ClientTimeout
from config import config, get_logger

# Module-specific logger
logger = get_logger("azure")


class BlobClient:
    """Minimal Azure Blob Storage REST API client (SharedKeyLite).

    Only implements what the report store needs: containers, listing, and
    reading/writing/deleting block blobs.
    """

    def __init__(self, account: str, auth: str | None = None, session: ClientSession | None = None) -> None:
        if not auth:
            raise ValueError("Storage account key (auth) is required")
        self.account = account
        self.auth = b64decode(auth)
        self.session = session or ClientSession(
            json_serialize=dumps,
            timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.account}.blob.core.windows.net"

    async def close(self) -> None:
        """Close the session"""
        await self.session.close()

    def _headers(self, headers: dict | None = None, date: str | None = None) -> dict:
        """Default headers for REST requests"""
        if not date:
            date = formatdate(usegmt=True)  # the API rejects non-GMT dates
        return {
            'x-ms-date': date,
            'x-ms-version': '2018-03-28',
            'Content-Type': 'application/octet-stream',
            'Connection': 'Keep-Alive',
            **(headers or {}),
        }

    def _sign_for_blobs(self, verb: str, canonicalized: str, headers: dict | None = None, payload: bytes = b"") -> dict:
        """Compute SharedKeyLite authorization header and add standard headers"""
        headers = self._headers(headers)
        signing_headers = sorted(k for k in headers.keys() if 'x-ms' in k)
        canon_headers = "\n".join(f"{k}:{headers[k]}" for k in signing_headers)
        sign = "\n".join([verb, '', headers['Content-Type'], '', canon_headers, canonicalized]).encode('utf-8')
        signature = b64encode(HMAC(self.auth, sign, sha256).digest()).decode('utf-8')
        return {
            'Authorization': f'SharedKeyLite {self.account}:{signature}',
            'Content-Length': str(len(payload)),
            **headers
        }

    async def create_container(self, container_name: str) -> ClientResponse:
        """Create a container (409 when it already exists)"""
        canon = f'/{self.account}/{container_name}'
        uri = f'{self.base_url}/{container_name}?restype=container'
        return await self.session.put(uri, headers=self._sign_for_blobs("PUT", canon))

    def _parse_blob_list_xml(self, xml_text: str) -> Tuple[List[dict], Optional[str]]:
        """Parse Azure List Blobs XML and return (items, next_marker)."""
        doc = ElementTree.fromstring(xml_text)
        items: List[dict] = []
        for blob in doc.findall(".//Blob"):
            item = {"name": blob.findtext("Name")}
            props = blob.find("Properties")
            if props is not None:
                for prop in list(props):
                    if not prop.text:
                        continue
                    if prop.tag in ("Last-Modified", "Creation-Time"):
                        item[prop.tag.lower()] = parsedate_to_datetime(prop.text)
                    elif prop.tag == "Content-Length":
                        item["content-length"] = int(prop.text)
                    elif prop.tag in ("Etag", "Content-Type"):
                        item[prop.tag.lower()] = prop.text
            items.append(item)
        next_marker = doc.findtext("NextMarker") or None
        return items, next_marker

    async def list_blobs(self, container_name: str, prefix: str | None = None) -> AsyncGenerator[dict, None]:
        """List blobs (paginated) yielding minimal dict metadata."""
        canon = f'/{self.account}/{container_name}?comp=list'
        base_uri = f'{self.base_url}/{container_name}?restype=container&comp=list'
        if prefix:
            base_uri += f'&prefix={prefix}'
        next_marker = None
        while True:
            uri = base_uri if not next_marker else f"{base_uri}&marker={next_marker}"
            res = await self.session.get(uri, headers=self._sign_for_blobs("GET", canon))
            if res.status == 404:
                # Container not created yet
                return
            if not res.ok:
                logger.error(f"Listing {container_name} failed: HTTP {res.status} {await res.text()}")
                res.raise_for_status()
            items, next_marker = self._parse_blob_list_xml(await res.text())
            for item in items:
                yield item
            if not next_marker:
                break

    async def put_blob(self, container_name: str, blob_path: str, payload: bytes, mimetype: str | None = None) -> ClientResponse:
        """Upload a block blob"""
        canon = f'/{self.account}/{container_name}/{blob_path}'
        uri = f'{self.base_url}/{container_name}/{blob_path}'
        mimetype = mimetype or "application/octet-stream"
        headers = {
            'x-ms-blob-type': 'BlockBlob',
            'x-ms-blob-content-type': mimetype,
            'Content-Type': mimetype,
        }
        return await self.session.put(uri, data=payload, headers=self._sign_for_blobs("PUT", canon, headers, payload))

    async def get_blob(self, container_name: str, blob_path: str) -> ClientResponse:
        """Download a blob; callers check ``status`` (404 when missing)"""
        canon = f'/{self.account}/{container_name}/{blob_path}'
        uri = f'{self.base_url}/{container_name}/{blob_path}'
        return await self.session.get(uri, headers=self._sign_for_blobs("GET", canon))
