import os

from grundy import create_app

app = create_app()


if __name__ == "__main__":
    port = int((os.getenv("PORT") or "5000").strip() or 5000)
    app.run(host="0.0.0.0", port=port)
