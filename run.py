"""
Application entry point
Notion sync engine - backend service

Start:
    python run.py

Configuration:
    - put NOTION_API_KEY, API_KEY, DATABASE_URL etc. in a .env file
"""
import os

# Load environment variables
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

from notion_sync import create_app
from notion_sync.config import Config, get_config

Config.init_paths()

config_class = get_config()

app = create_app(config_class)

if __name__ == '__main__':
    env = os.environ.get('FLASK_ENV', 'development')
    if env == 'production':
        config_class.validate()

    port = int(os.environ.get('PORT', 8000))

    print("=" * 60)
    print("Notion sync engine - backend service")
    print("=" * 60)
    print(f"Service: http://localhost:{port}")
    print(f"API: http://localhost:{port}/api")
    print(f"Environment: {env}")
    print(f"Database: {app.config['SQLALCHEMY_DATABASE_URI']}")
    print(f"CORS origins: {', '.join(config_class.CORS_ORIGINS)}")
    print(f"Concurrency: {app.config['CONCURRENCY_MIN']}-{app.config['CONCURRENCY_MAX']} "
          f"(initial {app.config['CONCURRENCY_INITIAL']})")

    if app.config.get('NOTION_API_KEY'):
        print("Notion API key: configured")
    else:
        print("WARNING: Notion API key not configured (set NOTION_API_KEY)")

    if app.config.get('API_KEY'):
        print("API authentication: enabled")
    else:
        print("WARNING: API authentication disabled (set API_KEY)")

    print("=" * 60)

    app.run(host='0.0.0.0', port=port, debug=(env == 'development'), use_reloader=False)
