"""
Reefdex: spot reef fish, track progress, keep it on your account.

The UI reflects UnlockStore state; it never mutates unlocks itself.

Each browser session owns one UnlockStore, held in process memory and keyed
by a random session id stored in the signed session cookie. Guests keep
their sightings only for the life of that store; signing in merges them
into the account once.

Error Semantics:
- 404 = Species not found
- 409 = Toggle already in flight for this species
- 503 = Backend unavailable (the change was rolled back)
"""

import asyncio
import logging
import secrets
import sys
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

from fasthtml.common import *

# Add project root to path for imports
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from core.config import HOST, PORT, DEBUG, SESSION_SECRET, CATALOG_PATH
from core.catalog import SpeciesCatalog, SpeciesRecord, load_catalog
from core.errors import (
    AuthError, CatalogError, PartialMergeFailure, RemoteUnavailable, ToggleInProgress,
)
from core.identity import Identity
from core.profiles import Profile, upsert_profile
from core.progress import FilterTag, filter_catalog, progress, sort_by_name
from core.remote_gateway import RemoteUnlockGateway
from core.unlock_store import UnlockStore
from app.auth import (
    is_auth_enabled, get_current_user, remember_user,
    authenticate, create_account,
)

# --- INSTRUMENTATION IMPORT ---
from core.event_recorder import RUN_END, RUN_START, get_event_recorder

logger = logging.getLogger(__name__)


# --- INSTRUMENTATION LIFECYCLE HOOKS ---
@asynccontextmanager
async def lifespan(app):
    """Load the catalog once and log the start/end of a run."""
    try:
        await get_catalog()
    except CatalogError as e:
        logger.error(f"[startup] Catalog not loaded: {e}")

    await asyncio.to_thread(get_event_recorder().record, RUN_START, {
        "action": "server_start",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }, "system")
    yield
    await asyncio.to_thread(get_event_recorder().record, RUN_END, {
        "action": "server_shutdown",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }, "system")
# ---------------------------------------


app, rt = fast_app(
    pico=False,
    secret_key=SESSION_SECRET,
    lifespan=lifespan,
    hdrs=(
        Meta(name="viewport", content="width=device-width, initial-scale=1"),
        # Swap 409/503 bodies so error toasts reach the page
        Meta(name="htmx-config", content='{"responseHandling": ['
             '{"code": "204", "swap": false}, {"code": "[23]..", "swap": true}, '
             '{"code": "409|503", "swap": true, "error": true}, '
             '{"code": "[45]..", "swap": false, "error": true}]}'),
        Script(src="https://cdn.tailwindcss.com"),
        # Hyperscript required for _="on load ..." toast dismissal
        Script(src="https://unpkg.com/hyperscript.org@0.9.12"),
    ),
)


# =============================================================================
# CATALOG & SESSION STORES
# =============================================================================

_catalog: SpeciesCatalog | None = None

# Guest sets live only as long as their store; the oldest stores are dropped
# once this many sessions are held
MAX_SESSION_STORES = 5000
_unlock_stores: "OrderedDict[str, UnlockStore]" = OrderedDict()
_gateway = RemoteUnlockGateway()


async def get_catalog() -> SpeciesCatalog:
    """Load the species catalog on first use and keep it for the process."""
    global _catalog
    if _catalog is None:
        _catalog = await load_catalog()
    return _catalog


def _session_id(sess: dict) -> str:
    sid = sess.get("sid")
    if not sid:
        sid = secrets.token_urlsafe(16)
        sess["sid"] = sid
    return sid


async def get_unlock_store(sess: dict) -> UnlockStore:
    """
    The session's UnlockStore, created on first use.

    A signed-in session whose store is missing (new process, evicted store)
    gets its account mirror reloaded here.

    Raises:
        RemoteUnavailable: the account's unlocks could not be loaded
    """
    sid = _session_id(sess)
    store = _unlock_stores.get(sid)
    if store is None:
        store = UnlockStore(_gateway)
        _unlock_stores[sid] = store
        while len(_unlock_stores) > MAX_SESSION_STORES:
            _unlock_stores.popitem(last=False)
    else:
        _unlock_stores.move_to_end(sid)

    identity = get_current_user(sess)
    if identity is not None and store.identity is None:
        await store.set_identity(identity)
    return store


def flash(sess: dict, message: str, variant: str = "info") -> None:
    """Queue a toast for the next full page render."""
    sess["flash"] = {"message": message, "variant": variant}


# =============================================================================
# COMPONENTS
# =============================================================================

def toast_container(*toasts) -> Div:
    """
    Toast notification container.
    UX Intent: Non-blocking feedback for actions.
    """
    return Div(
        *toasts,
        id="toast-container",
        cls="fixed top-4 right-4 z-50 flex flex-col gap-2"
    )


def toast(message: str, variant: str = "info") -> Div:
    """
    Single toast notification.
    Variants: success, error, warning, info
    """
    colors = {
        "success": "bg-emerald-600 text-white",
        "error": "bg-red-600 text-white",
        "warning": "bg-amber-500 text-white",
        "info": "bg-stone-700 text-white",
    }
    icons = {
        "success": "✓",
        "error": "✗",
        "warning": "⚠",
        "info": "ℹ",
    }
    return Div(
        Span(icons.get(variant, ""), cls="mr-2"),
        Span(message),
        cls=f"px-4 py-3 rounded shadow-lg flex items-center {colors.get(variant, colors['info'])}",
        # Auto-dismiss after 5 seconds
        **{"_": "on load wait 5s then remove me"}
    )


def toast_response(message: str, status_code: int, variant: str = "error") -> Response:
    """An HTMX response that only appends a toast."""
    return Response(
        to_xml(toast(message, variant)),
        status_code=status_code,
        headers={"HX-Reswap": "beforeend", "HX-Retarget": "#toast-container"},
    )


def progress_bar(percentage: int, oob: bool = False) -> Div:
    attrs = {"hx_swap_oob": "true"} if oob else {}
    return Div(
        Div(
            cls="bg-gradient-to-r from-pink-500 via-yellow-500 to-blue-500 h-full rounded-xl",
            style=f"width: {percentage}%",
        ),
        Div(f"{percentage}%", cls="absolute top-0 right-2 text-black font-bold"),
        id="progress-bar",
        cls="relative w-full h-8 bg-gray-300 border border-black rounded-xl",
        **attrs,
    )


def species_card(record: SpeciesRecord, unlocked: bool, tag: FilterTag) -> Button:
    """
    One grid card. Clicking toggles the sighting.
    The button is disabled while its request is in flight.
    """
    state = "bg-white text-black scale-100" if unlocked else "bg-black text-white scale-90"
    return Button(
        Img(src=record.image_url, alt=record.name,
            cls="w-full aspect-square object-cover mb-2 " + ("" if unlocked else "grayscale")),
        H2(record.name, cls="font-bold text-center"),
        P(record.scientific_name, cls="text-sm italic text-center"),
        id=f"species-{record.id}",
        type="button",
        cls=f"cursor-pointer border rounded p-4 flex flex-col items-center transition-all duration-300 {state}",
        hx_post=f"/unlocks/{quote(record.id, safe='')}/toggle?location={tag.name}",
        hx_target="this",
        hx_swap="outerHTML",
        hx_disabled_elt="this",
        data_unlocked="true" if unlocked else "false",
    )


def filter_select(tag: FilterTag) -> Form:
    return Form(
        Select(
            *[Option(t.label, value=t.name, selected=(t is tag)) for t in FilterTag],
            name="location",
            onchange="this.form.submit()",
            cls="p-2 border rounded-full bg-white text-black shadow-md",
        ),
        method="get", action="/",
    )


def account_bar(identity: Identity | None) -> Div:
    if not is_auth_enabled():
        return Div(P("Guest mode: sightings are kept until you close the site.",
                     cls="text-gray-400 text-sm"))
    if identity:
        return Div(
            Span(identity.email or "Signed in", cls="text-sm text-gray-300 mr-3"),
            A("Sign out", href="/logout", cls="text-xs text-gray-400 hover:text-white underline"),
        )
    return Div(
        A("Sign in", href="/login", cls="text-sm text-blue-400 hover:underline mr-3"),
        A("Sign up", href="/signup", cls="text-sm text-blue-400 hover:underline"),
        Span(" to keep your sightings", cls="text-sm text-gray-400"),
    )


def residue_banner(residue: frozenset) -> Div:
    """Offer to retry guest sightings that did not make it to the account."""
    if not residue:
        return Div(id="merge-residue")
    n = len(residue)
    return Div(
        Span(f"{n} sighting{'s' if n != 1 else ''} from before you signed in "
             f"{'were' if n != 1 else 'was'} not saved to your account.", cls="mr-3"),
        Button("Retry", hx_post="/unlocks/retry-merge", hx_target="#merge-residue",
               hx_swap="outerHTML", hx_disabled_elt="this",
               cls="px-3 py-1 bg-amber-600 hover:bg-amber-700 rounded text-white text-sm"),
        id="merge-residue",
        cls="mx-4 mt-4 p-3 rounded bg-amber-100 text-amber-900 flex items-center",
    )


def auth_page(title: str, heading: str, fields: list, action: str, submit: str,
              error: str = None, footer=None):
    return Html(
        Head(
            Meta(name="viewport", content="width=device-width, initial-scale=1"),
            Title(f"{title} - Reefdex"),
            Script(src="https://cdn.tailwindcss.com"),
        ),
        Body(
            Div(
                H1(heading, cls="text-2xl font-bold mb-2"),
                P(error, cls="text-red-400 mb-4 text-sm") if error else
                P("Your guest sightings are added to your account.", cls="text-gray-400 mb-8"),
                Form(
                    *fields,
                    Button(submit, type="submit",
                           cls="w-full p-2 bg-blue-600 hover:bg-blue-700 rounded text-white font-medium"),
                    method="post", action=action, cls="space-y-2"
                ),
                footer,
                cls="max-w-md mx-auto mt-10 sm:mt-20 p-4 sm:p-8 bg-gray-800 rounded-lg"
            ),
            cls="min-h-screen bg-gray-900 text-white"
        ),
    )


def text_field(label: str, name: str, input_type: str = "text", value: str = "",
               required: bool = False, **kwargs) -> Div:
    return Div(
        Label(label, fr=name, cls="block text-sm mb-1"),
        Input(type=input_type, name=name, id=name, value=value, required=required,
              cls="w-full p-2 rounded bg-gray-700 text-white border border-gray-600", **kwargs),
        cls="mb-4"
    )


def login_page(error: str = None, email: str = ""):
    return auth_page(
        "Login", "Reefdex",
        [text_field("Email", "email", "email", email, required=True),
         text_field("Password", "password", "password", required=True)],
        "/login", "Sign In", error,
        footer=P("Need an account? ", A("Sign up", href="/signup", cls="text-blue-400 hover:underline"),
                 cls="mt-4 text-gray-400 text-sm"),
    )


def signup_page(error: str = None, form: dict = None):
    form = form or {}
    return auth_page(
        "Sign Up", "Join Reefdex",
        [text_field("Email", "email", "email", form.get("email", ""), required=True),
         text_field("Password", "password", "password", required=True, minlength="6"),
         text_field("Name", "name", value=form.get("name", "")),
         text_field("Favorite Fish", "favorite_fish", value=form.get("favorite_fish", "")),
         text_field("Location", "home_location", value=form.get("home_location", "")),
         Div(Label("Bio", fr="bio", cls="block text-sm mb-1"),
             Textarea(form.get("bio", ""), name="bio", id="bio",
                      cls="w-full p-2 rounded bg-gray-700 text-white border border-gray-600"),
             cls="mb-4")],
        "/signup", "Create Account", error,
        footer=P("Already have an account? ", A("Sign in", href="/login", cls="text-blue-400 hover:underline"),
                 cls="mt-4 text-gray-400 text-sm"),
    )


# =============================================================================
# ROUTES
# =============================================================================

@rt("/health")
async def health():
    """Health check endpoint."""
    try:
        species = len(await get_catalog())
        status = "ok"
    except CatalogError:
        species = 0
        status = "degraded"
    return {
        "status": status,
        "species": species,
        "auth_enabled": is_auth_enabled(),
        "sessions": len(_unlock_stores),
    }


@rt("/")
async def get(location: str = "", sess=None):
    """Species grid with location filter and progress bar."""
    tag = FilterTag.parse(location)
    toasts = []
    if sess.get("flash"):
        note = sess.pop("flash")
        toasts.append(toast(note["message"], note.get("variant", "info")))

    try:
        catalog = await get_catalog()
    except CatalogError as e:
        logger.error(f"Catalog unavailable: {e}")
        return Title("Reefdex"), Div(
            H1("Reefdex", cls="text-2xl font-bold"),
            P("The species list could not be loaded. Please try again shortly."),
            cls="p-8",
        )

    try:
        store = await get_unlock_store(sess)
        unlocked = store.snapshot()
        residue = store.residue
    except RemoteUnavailable:
        toasts.append(toast("Your sightings could not be loaded. Refresh to try again.", "error"))
        unlocked = frozenset()
        residue = frozenset()

    shown = sort_by_name(filter_catalog(catalog, tag))
    identity = get_current_user(sess)

    return Title("Reefdex"), Div(
        toast_container(*toasts),
        Div(
            H1("Reefdex", cls="text-xl font-bold"),
            Div(progress_bar(progress(shown, unlocked)), cls="w-1/3"),
            filter_select(tag),
            account_bar(identity),
            cls="flex items-center justify-between gap-4 p-4 bg-gray-900 text-white sticky top-0 z-10",
        ),
        residue_banner(residue),
        Div(
            *[species_card(r, r.id in unlocked, tag) for r in shown],
            id="species-grid",
            cls="p-4 grid grid-cols-2 sm:grid-cols-4 gap-4",
        ) if shown else P("No species to show.", cls="p-8 text-center"),
    )


@rt("/unlocks/{species_id:path}/toggle")
async def post(species_id: str, location: str = "", sess=None):
    """Toggle a sighting. Returns the re-rendered card and the progress bar (out of band)."""
    try:
        catalog = await get_catalog()
    except CatalogError:
        return toast_response("The species list is unavailable right now.", 503)

    record = catalog.get(species_id)
    if record is None:
        return Response("Species not found", status_code=404)

    try:
        store = await get_unlock_store(sess)
        await store.toggle(species_id)
    except ToggleInProgress:
        return toast_response("Still saving that sighting, hang on.", 409, "warning")
    except RemoteUnavailable:
        return toast_response("Couldn't save that change. Please try again.", 503)

    tag = FilterTag.parse(location)
    unlocked = store.snapshot()
    shown = filter_catalog(catalog, tag)
    return (
        species_card(record, record.id in unlocked, tag),
        progress_bar(progress(shown, unlocked), oob=True),
    )


@rt("/unlocks/retry-merge")
async def post(sess):
    """Retry guest sightings left over from a partial merge."""
    try:
        store = await get_unlock_store(sess)
        await store.retry_merge()
    except PartialMergeFailure as e:
        return residue_banner(e.failed), Div(
            toast(str(e), "warning"), id="toast-container", hx_swap_oob="beforeend"
        )
    except RemoteUnavailable:
        return toast_response("Couldn't reach your account. Please try again.", 503)
    return Response("", headers={"HX-Refresh": "true"})


async def _adopt_identity(sess: dict, identity: Identity) -> str | None:
    """
    Merge the session's guest sightings into the account and sign it in.

    Returns an error message if the session stays a guest.
    """
    try:
        store = await get_unlock_store(sess)
        await store.set_identity(identity)
    except PartialMergeFailure as e:
        remember_user(sess, identity)
        flash(sess, str(e), "warning")
        return None
    except RemoteUnavailable:
        return "Your sightings could not be loaded, so you are still browsing as a guest. Please try again."
    remember_user(sess, identity)
    return None


@rt("/login")
def get(sess):
    """Login page. Redirects to home if already authenticated or auth disabled."""
    if not is_auth_enabled():
        return RedirectResponse('/', status_code=303)
    if get_current_user(sess):
        return RedirectResponse('/', status_code=303)
    return login_page()


@rt("/login")
async def post(email: str, password: str, sess):
    """Handle login form submission."""
    try:
        identity = await authenticate(email, password)
    except AuthError as e:
        return login_page(e.reason, email)

    error = await _adopt_identity(sess, identity)
    if error:
        return login_page(error, email)
    return RedirectResponse('/', status_code=303)


@rt("/signup")
def get(sess):
    """Signup page."""
    if not is_auth_enabled():
        return RedirectResponse('/', status_code=303)
    if get_current_user(sess):
        return RedirectResponse('/', status_code=303)
    return signup_page()


@rt("/signup")
async def post(email: str, password: str, sess, name: str = "", favorite_fish: str = "",
               home_location: str = "", bio: str = ""):
    """Handle signup form submission."""
    form = {"email": email, "name": name, "favorite_fish": favorite_fish,
            "home_location": home_location, "bio": bio}
    try:
        identity = await create_account(email, password)
    except AuthError as e:
        return signup_page(e.reason, form)

    error = await _adopt_identity(sess, identity)
    if error:
        return signup_page(error, form)

    profile = Profile(name=name, favorite_fish=favorite_fish, location=home_location, bio=bio)
    try:
        await upsert_profile(identity, profile)
    except RemoteUnavailable as e:
        logger.warning(f"Profile not saved for user={identity.id}: {e}")
        flash(sess, "Account created, but your profile details could not be saved.", "warning")
    return RedirectResponse('/', status_code=303)


@rt("/logout")
async def get(sess):
    """Log out and redirect to home. The next visit starts an empty guest set."""
    store = _unlock_stores.pop(sess.get("sid", ""), None)
    if store is not None:
        await store.set_identity(None)
    sess.clear()
    return RedirectResponse('/', status_code=303)


if __name__ == "__main__":
    # Startup diagnostics
    print("=" * 60)
    print("REEFDEX STARTUP")
    print("=" * 60)
    print(f"[config] Host: {HOST}")
    print(f"[config] Port: {PORT}")
    print(f"[config] Debug: {DEBUG}")
    print(f"[config] Auth enabled: {is_auth_enabled()}")
    if not is_auth_enabled():
        print(f"[config] Catalog file: {CATALOG_PATH}")
    print("=" * 60)
    print(f"Server starting at http://{HOST}:{PORT}")
    print("=" * 60)
    serve(host=HOST, port=PORT, reload=DEBUG)
