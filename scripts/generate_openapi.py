"""Write the gateway's OpenAPI schema to a JSON file.

Usage:
    python -m scripts.generate_openapi [output.json]
"""

import json
import sys
from pathlib import Path

from app.main import app


def main() -> None:
    schema = app.openapi()
    output = Path(sys.argv[1] if len(sys.argv) > 1 else "openapi.json")
    output.write_text(json.dumps(schema, indent=2, ensure_ascii=False) + "\n")
    print(f"Generated {output} ({len(schema['paths'])} endpoints)")


if __name__ == "__main__":
    main()
