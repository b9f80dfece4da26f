# FILE: scripts/openapi_dump.py
# Usage: python scripts/openapi_dump.py [out.json]   (or point it at a running
# server: python scripts/openapi_dump.py http://127.0.0.1:8010/openapi.json)
import json, sys, urllib.request

from permit_vault.service_http import create_app

target = sys.argv[1] if len(sys.argv) > 1 else ""
if target.startswith("http"):
    doc = json.load(urllib.request.urlopen(target))
else:
    doc = create_app().openapi()
text = json.dumps(doc, indent=2)
if target and not target.startswith("http"):
    with open(target, "w", encoding="utf-8") as f:
        f.write(text + "\n")
else:
    print(text)
