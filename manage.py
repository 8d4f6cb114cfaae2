"""Management script for database and billing maintenance tasks"""

from dotenv import load_dotenv
from flask.cli import FlaskGroup

from tenant_billing import create_app

load_dotenv()

cli = FlaskGroup(create_app=create_app)


if __name__ == "__main__":
    cli()
