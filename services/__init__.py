"""
Kleanr business services.

Services hold the workflow rules and talk to the models directly.  They
raise ``services.errors.ServiceError`` subclasses; blueprints let those
propagate to the error handler registered in ``server.create_app``.
"""
