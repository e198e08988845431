from app.yiba import create_app

app = create_app()
