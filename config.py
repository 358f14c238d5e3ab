import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///database.db")

CORS_ORIGINS = [origin.strip() for origin in
                os.getenv("CORS_ORIGINS",
                          "http://localhost:8080,http://localhost:3000,"
                          "http://localhost:55753").split(",")
                if origin.strip()]

HOST = os.getenv("HOST", "localhost")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LIST_LIMIT_DEFAULT = int(os.getenv("LIST_LIMIT_DEFAULT", 20))
LIST_LIMIT_MAX = int(os.getenv("LIST_LIMIT_MAX", 100))
