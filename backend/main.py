from payrecon import create_app

app = create_app()
