# JCS-style canonical JSON: sorted keys, no whitespace, UTF-8.
# Payloads and receipts are hashed and verified by this same function, so float formatting is stable.
import json

def jcs_canonicalize(obj) -> bytes:
    def sort_obj(o):
        if isinstance(o, dict):
            return {k: sort_obj(o[k]) for k in sorted(o.keys())}
        elif isinstance(o, (list, tuple)):
            return [sort_obj(i) for i in o]
        else:
            return o
    text = json.dumps(sort_obj(obj), separators=(',', ':'), ensure_ascii=False)
    return text.encode("utf-8")
