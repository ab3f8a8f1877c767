from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

from sponsortx import IdentityDocument, first_endpoint_url, normalize_domain, parse_service_endpoint, validate_linkage


async def main(path: str) -> None:
    raw = json.loads(Path(path).read_text())
    doc = IdentityDocument.from_json(raw)
    service = doc.find_service("LinkedDomains")
    endpoint = first_endpoint_url(parse_service_endpoint(service.service_endpoint)) if service else None
    linked = await validate_linkage(raw, doc.id)
    print(
        json.dumps(
            {"did": doc.id, "domain": normalize_domain(endpoint) if endpoint else None, "linked": linked},
            indent=2,
            sort_keys=True,
        )
    )


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("usage: happy_path.py <did-document.json>")
    asyncio.run(main(sys.argv[1]))
