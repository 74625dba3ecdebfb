from __future__ import annotations

import argparse
import base64
import sys
from pathlib import Path

import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from graph import build_consult_graph  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Render the consultation pipeline as a PNG via mermaid.ink.")
    parser.add_argument("--out", default="consult_graph.png", help="Output PNG path.")
    parser.add_argument("--mermaid", action="store_true", help="Print the mermaid source instead of fetching a PNG.")
    args = parser.parse_args()

    mermaid = build_consult_graph(None).get_graph().draw_mermaid(with_styles=False)
    if args.mermaid:
        print(mermaid)
        return

    encoded = base64.urlsafe_b64encode(mermaid.encode("utf-8")).decode("ascii")
    resp = requests.get(f"https://mermaid.ink/img/{encoded}?type=png&bgColor=!white", timeout=10)
    resp.raise_for_status()
    out_path = Path(args.out)
    out_path.write_bytes(resp.content)
    print(f"Wrote {out_path}")


if __name__ == "__main__":
    main()
