"""Local development entry point.

Usage:
    python run.py

Operator commands go through the Flask CLI instead:
    FLASK_APP=run.py flask add-codes --count 10
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from chatshop import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
