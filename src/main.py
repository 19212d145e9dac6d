import os

import uvicorn

#entry point to run FastAPI app
if __name__ == "__main__":
    uvicorn.run(
        "src.webapp:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "true").lower() == "true",
    )
