import logging
from pathlib import Path
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from routers import briefs, drafts, health, review_sessions, rulesets
from services.app_config import AppConfig
from services.brief_service import BriefService
from services.contract_service import ContractService
from services.draft_lifecycle import DraftLifecycle
from services.errors import StudioError
from services.llm_gateway import LLMGateway
from services.review_session import ReviewSessionEngine
from services.ruleset_service import RuleSetService
from services.story_generator import StoryGenerator
from storage.fs_store import FSStore

config = AppConfig.from_env()
logging.basicConfig(
    level=config.log_level,
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
)
logger = logging.getLogger('therastory')

store = FSStore(config.data_dir)
ruleset_service = RuleSetService(store)
default_rules = ruleset_service.seed_defaults()

brief_service = BriefService(store)
contract_service = ContractService(store, ruleset_service, brief_service)
llm_gateway = LLMGateway()
story_generator = StoryGenerator(llm_gateway)
draft_lifecycle = DraftLifecycle(
    store,
    brief_service,
    contract_service,
    story_generator,
    generation_timeout_s=config.generation_timeout_s,
    default_language=config.default_language,
)
review_engine = ReviewSessionEngine(store, draft_lifecycle, story_generator, proposal_timeout_s=config.proposal_timeout_s)
logger.info('data dir %s, default rule set %s, provider %s', config.data_dir, default_rules, story_generator.profile.get('provider'))

allowed_origins = [
    f'http://127.0.0.1:{config.frontend_port}',
    f'http://localhost:{config.frontend_port}',
    'http://127.0.0.1:5173',
    'http://localhost:5173',
]

app = FastAPI(title='Therapeutic Story Studio API')
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.include_router(health.router)
app.include_router(rulesets.router)
app.include_router(briefs.router)
app.include_router(drafts.router)
app.include_router(review_sessions.router)
