"""
WSGI entry point

    gunicorn app:app
"""
import os

from pdf2md import create_app

app = create_app(os.getenv('FLASK_ENV', 'production'))


if __name__ == '__main__':
    port = int(os.getenv('PORT', '5000'))
    app.run(host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False))
