"""Centralized user-facing text for chunkvault."""

from __future__ import annotations

class Styles:
    ERROR = "red"
    WARNING = "yellow"
    SUCCESS = "green"
    INFO = "dim"
    TITLE = "bold cyan"
    TABLE_HEADER = "bold magenta"


class Messages:
    APP_HELP = "chunkvault – incremental semantic indexing for source trees."
    HELP_INDEX_PATH = "Root directory to scan recursively for indexing."
    HELP_INDEX_FULL = "Ignore stored checksums and re-index every collected file."
    HELP_INDEX_NO_DELETE = "Skip detection of files removed since the last run."
    HELP_INDEX_INCLUDE = "Glob pattern of files to index (repeatable)."
    HELP_INDEX_EXCLUDE = "Glob pattern of files to skip (repeatable)."
    HELP_INDEX_MAX_SIZE = "Skip files larger than this many bytes."
    HELP_INDEX_LANGUAGE = "Only store chunks of this language (repeatable)."
    HELP_INCLUDE_HIDDEN = "Include hidden files and directories."
    HELP_NO_GITIGNORE = "Do not apply .gitignore rules while collecting files."
    HELP_SEARCH_QUERY = "Text used to semantically match indexed chunks."
    HELP_SEARCH_PATH = "Root directory whose index will be searched."
    HELP_SEARCH_TOP = "Number of results to display."
    HELP_SEARCH_LANGUAGE = "Only return chunks of this language."
    HELP_INDEX = "Index or refresh the chunks of a directory."
    HELP_SEARCH = "Search the index of a directory for chunks similar to a query."
    HELP_STATS = "Show statistics for the index of a directory."
    HELP_CLEANUP = "Purge chunks of files that were removed from the source tree."
    HELP_BACKUP = "Write a point-in-time backup of the index."
    HELP_RESTORE = "Restore the index from a backup file."
    HELP_EXPORT = "Export the index as JSON."
    HELP_VACUUM = "Purge replaced chunks and compact the index."
    HELP_VALIDATE = "Check the index for orphaned or corrupt records."
    HELP_CLEAR = "Remove every record from the index."
    HELP_CONFIG = "Show or update the persisted configuration."
    HELP_VERBOSE = "Log progress information."
    HELP_DEBUG = "Log debugging information."
    HELP_SHOW_CONFIG = "Show current configuration."
    HELP_SET_BACKEND = "Set the store backend (local or remote)."
    HELP_SET_REMOTE_PROVIDER = "Set the primary embedding provider (workers-ai, openai or none)."
    HELP_SET_LOCAL_PROVIDER = "Set the secondary embedding provider (ollama, fastembed or none)."
    HELP_SET_ACCOUNT_ID = "Persist the Cloudflare account id."
    HELP_SET_API_KEY = "Persist the Cloudflare API token."
    HELP_SET_DATABASE_ID = "Persist the D1 database id used by the remote store."
    HELP_SET_DIMENSION = "Set the embedding dimension pinned by new indexes."
    HELP_SET_MAX_FILE_SIZE = "Set the default maximum file size in bytes."
    HELP_OUTPUT = "File to write to."

    ERROR_EMPTY_TEXT = "Embedding input text must not be empty."
    ERROR_EMPTY_QUERY = "Query text must not be empty."
    ERROR_BATCH_SIZE = "{name} must be greater than 0."
    ERROR_UNKNOWN_BACKEND = "Unsupported store backend: {value}. Use one of: {allowed}."
    ERROR_UNKNOWN_PROVIDER = "Unsupported embedding provider: {value}. Use one of: {allowed}."

    ERROR_PROVIDER_FAILED = "{provider} request failed: {reason}"
    ERROR_PROVIDER_PAYLOAD = "{provider} returned a malformed response payload."
    ERROR_PROVIDER_COUNT = "{provider} returned {got} embeddings for {expected} inputs."
    ERROR_PROVIDER_CREDENTIALS = "{provider} credentials are not configured."
    ERROR_OPENAI_PREFIX = "OpenAI API request failed: "
    ERROR_LOCAL_DEP_MISSING = (
        "fastembed is not installed. Install it with `pip install \"chunkvault[local]\"`."
    )
    ERROR_LOCAL_MODEL_LOAD = "Unable to load local model {model}: {reason}"
    ERROR_LOCAL_MODEL_EMBED = "Local embedding failed: {reason}"
    ERROR_NO_EMBEDDINGS = "{provider} returned no embeddings."
    WARNING_PLACEHOLDER_EMBEDDING = (
        "Using hash-based placeholder embeddings; search relevance is degraded. "
        "Configure CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_KEY or start a local "
        "embedding service."
    )

    ERROR_STORE_NOT_INITIALIZED = "Index store is not initialized; call initialize() first."
    ERROR_STORE_OPEN = "Unable to open index store at {path}: {reason}"
    ERROR_STORE_QUERY = "Index store operation failed: {reason}"
    ERROR_MIGRATION_FAILED = "Schema migration {version} ({name}) failed: {reason}"
    ERROR_CORRUPT_EMBEDDING = "Stored embedding for chunk {chunk_id} is corrupt: {reason}"
    ERROR_CORRUPT_FIELD = "Stored {field} for chunk {chunk_id} is corrupt: {reason}"
    ERROR_CORRUPT_ROW = "Stored {table} row {key} is corrupt: {reason}"
    ERROR_DIMENSION_PINNED = (
        "Index was created with embedding dimension {pinned} but {requested} was requested. "
        "Run `chunkvault clear` and re-index to change the dimension."
    )
    ERROR_VECTOR_DIMENSION = (
        "Embedding for chunk {chunk_id} has dimension {got}; the index requires {expected}."
    )
    ERROR_QUERY_DIMENSION = (
        "Query embedding has dimension {got}; the index requires {expected}."
    )
    ERROR_FILE_DIMENSION = (
        "Embeddings for {path} have dimension {got}; the index requires {expected}."
    )
    ERROR_BACKUP_MISSING = "Backup file not found: {path}"
    ERROR_BACKUP_INVALID = "Backup file {path} is not a valid index export."
    ERROR_D1_REQUEST = "D1 request failed: {reason}"
    ERROR_D1_CREDENTIALS = (
        "Remote store requires a Cloudflare account id, API token and D1 database id."
    )

    ERROR_CHECKSUM_READ = "Unable to read {path} for hashing: {reason}"
    ERROR_EXTRACT_READ = "Unable to read {path}: {reason}"
    ERROR_EXTRACT_DECODE = "Unable to decode {path} as text."

    INFO_NO_FILES = "No files found in the selected directory."
    INFO_NO_RESULTS = "No matching chunks found."
    INFO_INDEX_RUNNING = "Indexing files under {path}..."
    INFO_INDEX_UP_TO_DATE = "Index already matches the current directory; nothing to do."
    INFO_INDEX_SUMMARY = (
        "Indexed {files} file{files_plural} into {chunks} chunk{chunks_plural} in {seconds:.2f}s."
    )
    INFO_INDEX_DELETED = "Soft-deleted {deleted} removed file(s); purged {cleaned}."
    WARNING_INDEX_FAILURES = "{count} file(s) failed:"
    INFO_CLEANUP_DONE = "Purged {count} deleted file(s) from the index."
    INFO_BACKUP_CREATED = "Backup written to {path}."
    INFO_RESTORE_DONE = "Index restored from {path}."
    INFO_EXPORT_DONE = "Index exported to {path}."
    INFO_VACUUM_DONE = "Purged {count} replaced chunk(s) and compacted the index."
    INFO_VALIDATE_OK = "Index is consistent."
    WARNING_VALIDATE_ISSUES = "Index has {count} issue(s):"
    INFO_CLEAR_DONE = "Index cleared."
    INFO_CONFIG_UPDATED = "Configuration updated."
    INFO_CONFIG_SUMMARY = (
        "Store backend: {backend}\n"
        "Primary provider: {remote}\n"
        "Secondary provider: {local}\n"
        "Cloudflare account set: {account}\n"
        "Cloudflare token set: {token}\n"
        "D1 database set: {database}\n"
        "Embedding dimension: {dimension}\n"
        "Max file size: {max_size}\n"
        "Incremental: {incremental}"
    )
    PROGRESS_COLLECT = "Collecting files..."
    PROGRESS_FOUND = "Found {count} files"
    PROGRESS_DELETED = "Detected {count} deleted files"
    PROGRESS_FILTER = "{count} files need indexing"
    PROGRESS_NOTHING = "No new files to index"
    PROGRESS_EXTRACT = "Processing {path}"
    PROGRESS_EMBED = "Generating embeddings..."
    PROGRESS_STORE = "Storing in database..."
    PROGRESS_METADATA = "Updating index metadata..."
    PROGRESS_DONE = "Indexing complete"

    TABLE_SEARCH_TITLE = "chunkvault search results"
    TABLE_STATS_TITLE = "chunkvault index statistics"
    TABLE_HEADER_INDEX = "#"
    TABLE_HEADER_SIMILARITY = "Similarity"
    TABLE_HEADER_PATH = "Location"
    TABLE_HEADER_NAME = "Symbol"
    TABLE_HEADER_LANGUAGE = "Language"
    TABLE_HEADER_CHUNKS = "Chunks"
    TABLE_HEADER_FIELD = "Field"
    TABLE_HEADER_VALUE = "Value"
