from api import create_app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    print("\n🚀 Starting Background Jobs service...")
    print(f"📡 API: http://0.0.0.0:8001")
    print(f"📚 Docs: http://0.0.0.0:8001/docs")
    uvicorn.run(app, host="0.0.0.0", port=8001)
