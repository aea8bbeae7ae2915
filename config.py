"""
Environment configuration for the GuessDuel server.
Values come from the process environment, with a local .env file loaded first.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Supabase (document store + auth)
SUPABASE_URL = os.getenv('SUPABASE_URL')
SUPABASE_KEY = os.getenv('SUPABASE_KEY')

# Rooms and messages of different deployments share the same tables
APP_ID = os.getenv('APP_ID', 'default-app-id')

# Google GenAI image generation
GEMINI_API_KEY = os.getenv('GEMINI_API_KEY')
IMAGE_MODEL = os.getenv('IMAGE_MODEL', 'imagen-3.0-generate-002')

# Flask
SECRET_KEY = os.getenv('SECRET_KEY') or os.urandom(24)
PORT = int(os.environ.get('PORT', 8000))
FLASK_ENV = os.getenv('FLASK_ENV', 'development')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# How long the browser keeps a notification on screen
NOTIFICATION_TIMEOUT_MS = int(os.getenv('NOTIFICATION_TIMEOUT_MS', 3000))
