"""
POS Service — 起動スクリプト

  python -m pos_service         (= uvicorn pos_service.main:app)

HOST / PORT 環境変数で待ち受けアドレスを変えられる。
"""

import os

import uvicorn

APP = "pos_service.main:app"


def main() -> None:
    uvicorn.run(
        APP,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
