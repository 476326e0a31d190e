import os

from soulstitch import __version__, create_app

app = create_app()


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5001))
    print("=" * 50)
    print(f"SoulStitch Order Service v{__version__}")
    print("=" * 50)
    print(f"Database: {app.config['DATABASE_URL']}")
    print(f"Starting server on http://localhost:{port}")
    print("=" * 50)
    app.run(host='0.0.0.0', port=port, threaded=True)
