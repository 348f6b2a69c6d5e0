import re, secrets, string, time
from typing import Any, Optional

from backends import RecordStore

NON_SLUG_CHARS = re.compile(r'[^\w\s-]')
WHITESPACE_RUN = re.compile(r'\s+')
HYPHEN_RUN = re.compile(r'-+')


def generate_id(length:int=12) -> str:
    return ''.join(secrets.choice(string.ascii_letters + string.digits) for _ in range(length))


def derive_slug(title:str) -> str:
    '''Lower-case the title and reduce it to letters, digits and single hyphens.'''
    slug : str = title.lower()
    slug = NON_SLUG_CHARS.sub('', slug).replace('_', '')
    slug = WHITESPACE_RUN.sub('-', slug)
    slug = HYPHEN_RUN.sub('-', slug)
    return slug.strip('-')


def base_slug(title:str) -> str:
    '''Derived slug, or an opaque id when the title has nothing slug-worthy in it.'''
    return derive_slug(title) or generate_id().lower()


def assign_slug_for_create(store:RecordStore, table:str, title:str) -> str:
    '''
    Probe base, base-1, base-2, ... until the store has no post with that slug.

    The probe and the later insert are separate round trips, so two concurrent
    creations with the same title can both settle on the same slug.
    '''
    base : str = base_slug(title)
    candidate : str = base
    suffix : int = 0
    while store.get_by_key(table, 'slug', candidate) is not None:
        suffix += 1
        candidate = f'{base}-{suffix}'
    return candidate


def assign_slug_for_edit(store:RecordStore, table:str, post:dict[str, Any], title:str) -> str:
    '''
    Keep the slug when the title still derives the same base (case, punctuation
    and spacing edits), otherwise re-derive it and fall back to
    base-<milliseconds> when another post already holds the base.
    '''
    if derive_slug(title) == derive_slug(post['title']):
        return post['slug']

    base : str = base_slug(title)
    holder : Optional[dict[str, Any]] = store.get_by_key(table, 'slug', base)
    if holder is not None and holder['id'] != post['id']:
        return f'{base}-{time.time_ns() // 1_000_000}'
    return base
