"""Routes package for the task delivery application."""


def register_routes(app):
    """Register all route blueprints with the application."""
    from .tasks import tasks_bp
    from .delivery import delivery_bp

    app.register_blueprint(tasks_bp, url_prefix='/api/tasks')
    app.register_blueprint(delivery_bp, url_prefix='/api/delivery')
