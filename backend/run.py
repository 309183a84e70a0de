"""
Run script for the Verdict API.
"""

import os
import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "verdict.main:app",
        host=os.getenv("VERDICT_API_HOST", "0.0.0.0"),
        port=int(os.getenv("VERDICT_API_PORT", "18800")),
        reload=os.getenv("VERDICT_DEV_MODE", "").lower() == "true",
        log_level="info"
    )
