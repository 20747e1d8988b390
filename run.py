"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py seed-defaults
    flask --app run.py create-admin admin secret
    flask --app run.py --debug run

"""

from procurement_suite import create_app

# WSGI application object. `flask run` looks for this `app` variable to start the application.
app = create_app()

if __name__ == "__main__":
    # For direct `python run.py` usage (dev only); use `flask run` or a WSGI server otherwise.
    app.run(debug=True)
