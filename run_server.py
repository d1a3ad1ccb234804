# run_server.py
import os
from dotenv import load_dotenv

load_dotenv()

from psiagenda.persistence.db import init_db
from server import app

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "5000"))
    init_db()
    app.run(host=host, port=port)
