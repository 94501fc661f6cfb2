# run.py
import uvicorn
import os
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

if __name__ == "__main__":
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", 8000))

    # reload=True restarts the server on code changes (development only)
    uvicorn.run("gallery.main:app", host=host, port=port, reload=os.getenv("ENVIRONMENT", "development") != "production")
