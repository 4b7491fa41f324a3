from fastapi import APIRouter

router = APIRouter(prefix='/api')


@router.get('/health')
def health():
    from main import config, ruleset_service, story_generator

    return {
        'ok': True,
        'default_rule_set': ruleset_service.default_version(),
        'provider': story_generator.profile.get('provider'),
        'data_dir': str(config.data_dir),
    }
