from functools import lru_cache

from dotenv import load_dotenv
from supabase import create_client, Client

from campusnet.utils.env_helper import env_none_or_str


load_dotenv()


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    supabase_url = env_none_or_str("PUBLIC_SUPABASE_URL")
    supabase_key = env_none_or_str("SECRET_API_KEY")

    if not supabase_url or not supabase_key:
        raise RuntimeError("PUBLIC_SUPABASE_URL and SECRET_API_KEY must be set.")

    return create_client(supabase_url, supabase_key)
