from mangum import Mangum

from main import app


def test_vercel_entrypoint_exposes_app_and_lambda_handler():
    from api import index

    assert index.app is app
    assert isinstance(index.handler, Mangum)
