from app.compliance import create_app

app = create_app()
