import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        # Exclude render scratch space and finished media from the reload watcher
        reload_excludes=["renders/*", "media/*", "media/finals/*"]
    )
