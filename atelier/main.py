from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException

from atelier.logging import configure_logging, get_logger
from atelier.routers import billing, checklist, inventory, orders, price_rules, settings, suppliers
from atelier.security.headers import install_security_headers

configure_logging()
logger = get_logger(__name__)

app = FastAPI(title='Atelier Back Office')

install_security_headers(app)

app.include_router(orders.router)
app.include_router(checklist.router)
app.include_router(billing.router)
app.include_router(price_rules.router)
app.include_router(suppliers.router)
app.include_router(inventory.router)
app.include_router(settings.router)


@app.exception_handler(HTTPException)
async def http_error(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={'error': exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={'error': 'Invalid request', 'details': jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception('unhandled_error', path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={'error': 'Internal server error'})


@app.get('/health')
def health() -> dict:
    return {'data': {'status': 'ok'}}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
