#!/usr/bin/env python3
"""
StageCrypt - Password-based encryption of per-stage secrets files.

Overview:
- Encrypts a plaintext secrets file (e.g. secrets.dev.yml) into an artifact
  (secrets.dev.encrypted) that can be committed alongside a deployment project.
- Decrypts the artifact back with the same password, known out-of-band.
- Keys and IVs are derived with PBKDF2-HMAC-SHA512, ciphering is AES-256-CBC.
- Files are streamed in chunks, never loaded whole into memory.
- Password can come from the command line, a file, or a masked prompt.
- Reads plugin settings from a serverless-style YAML file.

Dependencies:
- Python 3.8+
- cryptography (pip install cryptography)
- colorama (pip install colorama)
- PyYAML (pip install PyYAML)

Usage:
    stagecrypt encrypt --stage dev --password mypass
    stagecrypt decrypt --stage prod --password-file ./pass.txt
    stagecrypt decrypt --stage prod --config serverless.yml  # prompts for password
    stagecrypt check --stage prod

Naming:
- Source (plaintext): secrets.<stage>.yml unless overridden.
- Entry (encrypted): source up to its first '.yml', suffixed with '.encrypted'.
- Both are resolved under <base-dir>/<secretsFilePathPrefix>.

Key Derivation:
- Key: PBKDF2-HMAC-SHA512(password, salt='default', 100000 iterations, 32 bytes)
- IV:  PBKDF2-HMAC-SHA512(password, salt='cipher-iv', 100000 iterations, 16 bytes)
- Legacy mode derives the IV from the derived key instead of the password.

File Format: raw AES-256-CBC ciphertext with PKCS7 padding. There is no header.
Salt and IV are re-derived from the password on every run, so encrypting the
same file twice with the same password gives identical bytes. The scheme
provides confidentiality only; tampering is not detected.
"""
import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, TextIO, Tuple

import yaml
from colorama import Fore, Style, init
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Program metadata
PROGRAM_VERSION = "1.0.0"
PROGRAM_NAME = "StageCrypt"
PLUGIN_NAME = "serverless-secrets"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageCryptConfig:
    """Configuration constants for StageCrypt."""
    KEY_SALT: bytes = b'default'  # PBKDF2 salt for the cipher key
    IV_SALT: bytes = b'cipher-iv'  # PBKDF2 salt for the initialization vector
    KDF_ITERATIONS: int = 100000
    KEY_LENGTH: int = 32  # AES-256
    IV_LENGTH: int = 16  # One AES block
    BLOCK_SIZE: int = 128  # PKCS7 padding block size in bits
    CHUNK_SIZE: int = 64 * 1024  # Bytes read per streaming step
    SOURCE_SUFFIX: str = '.yml'
    ENTRY_SUFFIX: str = '.encrypted'
    DEFAULT_STAGE: str = 'dev'
    PROMPT: str = 'Password: '
    MASK_CHAR: str = '*'
    LOG_FILE: str = 'stagecrypt.log'
    LOG_MAX_SIZE: int = 10 * 1024 * 1024  # Max log file size (10 MB)
    LOG_BACKUP_COUNT: int = 3  # Number of backup log files


DEFAULT_CONFIG = StageCryptConfig()


class StageCryptError(Exception):
    """Base class for every failure surfaced to the caller."""


class ConfigError(StageCryptError):
    pass


class PathError(StageCryptError):
    pass


class SecretsNotFoundError(StageCryptError):
    pass


class StreamError(StageCryptError):
    pass


class InputError(StageCryptError):
    pass


class Direction(Enum):
    ENCRYPT = 'encrypt'
    DECRYPT = 'decrypt'

    @property
    def past_tense(self) -> str:
        return f"{self.value}ed"


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NamingConfig:
    """File naming for one stage."""
    stage: str
    source: str
    entry: str
    path_prefix: str = ''

    @classmethod
    def for_stage(
        cls,
        stage: str,
        prefix: Optional[str] = None,
        source: Optional[str] = None,
        entry: Optional[str] = None,
        config: StageCryptConfig = DEFAULT_CONFIG,
    ) -> 'NamingConfig':
        """
        Build naming from a stage and optional overrides.

        Args:
            stage: Stage name, e.g. 'dev'.
            prefix: Directory relative to the base directory.
            source: Plaintext file name override.
            entry: Encrypted file name override.
            config: Constants providing the default suffixes.

        Returns:
            NamingConfig: Naming with defaults filled in.

        Raises:
            ConfigError: If the stage is empty or entry equals source.
        """
        if not stage:
            raise ConfigError("A stage is required to name the secrets file")
        source = source or f"secrets.{stage}{config.SOURCE_SUFFIX}"
        # Only the text before the first '.yml' is kept; a source without
        # '.yml' is suffixed whole.
        entry = entry or f"{source.split(config.SOURCE_SUFFIX)[0]}{config.ENTRY_SUFFIX}"
        if entry == source:
            raise ConfigError(
                f"Encrypted file name '{entry}' is the same as the secrets file name; "
                "encrypting would overwrite the plaintext"
            )
        return cls(stage=stage, source=source, entry=entry, path_prefix=prefix or '')


@dataclass(frozen=True)
class ResolvedPaths:
    """Absolute plaintext and encrypted paths plus their logical names."""
    plaintext_path: Path
    encrypted_path: Path
    source: str
    entry: str

    @property
    def plaintext_dir(self) -> Path:
        return self.plaintext_path.parent

    @property
    def encrypted_dir(self) -> Path:
        return self.encrypted_path.parent

    def endpoints(self, direction: Direction) -> Tuple[Path, Path, str, str]:
        """Return (source path, destination path, source name, destination name)."""
        if direction is Direction.ENCRYPT:
            return self.plaintext_path, self.encrypted_path, self.source, self.entry
        return self.encrypted_path, self.plaintext_path, self.entry, self.source


def _absolute(base_dir: Path, prefix: str, name: str) -> Path:
    # Same semantics as joining then normalising: an absolute name wins.
    relative_dir, filename = os.path.split(name)
    directory = os.path.abspath(os.path.join(str(base_dir), prefix, relative_dir))
    return Path(directory) / filename


def _same_file(first: Path, second: Path) -> bool:
    if first == second:
        return True
    try:
        return first.exists() and second.exists() and os.path.samefile(first, second)
    except OSError:
        return False


def resolve_naming(naming: NamingConfig, base_dir, create_dirs: bool = True) -> ResolvedPaths:
    """
    Resolve a NamingConfig under base_dir.

    Both target directories are created unless ``create_dirs`` is False.
    Raises ConfigError when source and entry point at the same file.
    """
    base_dir = Path(base_dir).expanduser()
    paths = ResolvedPaths(
        plaintext_path=_absolute(base_dir, naming.path_prefix, naming.source),
        encrypted_path=_absolute(base_dir, naming.path_prefix, naming.entry),
        source=naming.source,
        entry=naming.entry,
    )
    if _same_file(paths.plaintext_path, paths.encrypted_path):
        raise ConfigError(
            f"Encrypted file '{naming.entry}' resolves to the secrets file '{naming.source}'; "
            "encrypting would overwrite the plaintext"
        )

    if create_dirs and not (paths.plaintext_dir.is_dir() and paths.encrypted_dir.is_dir()):
        for directory in (paths.plaintext_dir, paths.encrypted_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create directory {directory}: {e}")
                raise PathError(f"Cannot create directory {directory}: {e}") from e
            logger.debug(f"Ensured directory exists: {directory}")

    logger.debug(
        f"Resolved stage '{naming.stage}': plaintext={paths.plaintext_path}, "
        f"encrypted={paths.encrypted_path}"
    )
    return paths


def resolve_paths(
    stage: str,
    base_dir,
    prefix: str = '',
    source: Optional[str] = None,
    entry: Optional[str] = None,
) -> ResolvedPaths:
    """
    Compute the plaintext and encrypted paths for a stage.

    Missing directories are created; missing files are not an error here.
    """
    return resolve_naming(NamingConfig.for_stage(stage, prefix, source, entry), base_dir)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PasswordMaterial:
    """Derived cipher key and IV. Never printed, logged or persisted."""
    key: bytes = field(repr=False)
    iv: bytes = field(repr=False)


class StageKeyManager:
    """Derives the AES key and IV from a password using PBKDF2-HMAC-SHA512."""
    def __init__(self, config: StageCryptConfig = DEFAULT_CONFIG, legacy_iv: bool = False):
        """
        Initialize the key manager.

        Args:
            config: StageCryptConfig instance with program constants.
            legacy_iv: If True, derive the IV from the derived key rather than
                the password, matching artifacts from earlier plugin releases.
        """
        self.config = config
        self.legacy_iv = legacy_iv

    def _pbkdf2(self, secret: bytes, salt: bytes, length: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=length,
            salt=salt,
            iterations=self.config.KDF_ITERATIONS,
        )
        return kdf.derive(secret)

    def derive_key(self, password: str) -> bytes:
        """Derive the 256-bit cipher key."""
        return self._pbkdf2(password.encode('utf-8'), self.config.KEY_SALT, self.config.KEY_LENGTH)

    def derive_iv(self, password: str, key: Optional[bytes] = None) -> bytes:
        """
        Derive the 128-bit IV.

        The IV comes from the raw password, not from the derived key, unless
        legacy mode is on.
        """
        if self.legacy_iv:
            secret = key if key is not None else self.derive_key(password)
        else:
            secret = password.encode('utf-8')
        return self._pbkdf2(secret, self.config.IV_SALT, self.config.IV_LENGTH)

    def derive(self, password: str) -> PasswordMaterial:
        """Derive key and IV in one call."""
        logger.debug(
            f"Deriving key material (password length: {len(password)} characters, "
            f"iterations: {self.config.KDF_ITERATIONS}, legacy_iv: {self.legacy_iv})"
        )
        key = self.derive_key(password)
        return PasswordMaterial(key=key, iv=self.derive_iv(password, key))


# ---------------------------------------------------------------------------
# Password acquisition
# ---------------------------------------------------------------------------

_ENTER = ('\r', '\n')
_BACKSPACE = ('\x7f', '\b')
_INTERRUPT = '\x03'
_EOF_KEYS = ('\x04', '\x1a')


class MaskedPrompt:
    """
    Single-use masked password reader.

    Each typed character is echoed as the mask character, so the operator
    sees how many characters were entered but never the characters
    themselves. On a POSIX terminal the TTY is switched to raw mode only for
    the duration of one read and restored afterwards. Non-terminal streams
    (pipes, test doubles) are read one character at a time with the same
    masking rules.
    """
    def __init__(
        self,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
        prompt: Optional[str] = None,
        config: StageCryptConfig = DEFAULT_CONFIG,
    ):
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.prompt = prompt if prompt is not None else config.PROMPT
        self.mask = config.MASK_CHAR

    def _is_terminal(self) -> bool:
        try:
            return self.stdin.isatty()
        except (AttributeError, ValueError):
            return False

    def read(self) -> str:
        """
        Prompt once and return the raw entered text.

        Raises:
            InputError: If the input stream is closed before anything is typed
                or no terminal is available.
            KeyboardInterrupt: If the operator presses Ctrl-C.
        """
        if self.stdin is None or getattr(self.stdin, 'closed', False):
            raise InputError("No terminal available for password entry")

        self.stdout.write(self.prompt)
        self.stdout.flush()

        if not self._is_terminal():
            return self._collect(lambda: self.stdin.read(1), newline='\n')
        if os.name == 'nt':
            import msvcrt
            return self._collect(msvcrt.getwch, newline='\r\n')
        return self._read_raw_tty()

    def _read_raw_tty(self) -> str:
        import termios
        import tty

        try:
            fd = self.stdin.fileno()
            saved = termios.tcgetattr(fd)
        except (OSError, ValueError, termios.error) as e:
            raise InputError(f"Terminal unavailable for password entry: {e}") from e
        try:
            tty.setraw(fd)
            # Raw mode disables output post-processing, so end the line with CRLF.
            return self._collect(lambda: self.stdin.read(1), newline='\r\n')
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

    def _collect(self, getch: Callable[[], str], newline: str) -> str:
        chars = []
        while True:
            char = getch()
            if char in _ENTER:
                break
            if char == '' or char in _EOF_KEYS:
                if not chars:
                    self.stdout.write(newline)
                    self.stdout.flush()
                    raise InputError("Password entry aborted (end of input)")
                break
            if char == _INTERRUPT:
                self.stdout.write(newline)
                self.stdout.flush()
                raise KeyboardInterrupt
            if char in _BACKSPACE:
                if chars:
                    chars.pop()
                    self.stdout.write('\b \b')
                    self.stdout.flush()
                continue
            chars.append(char)
            self.stdout.write(self.mask)
            self.stdout.flush()
        self.stdout.write(newline)
        self.stdout.flush()
        return ''.join(chars)


def acquire_password(explicit: Optional[str] = None, prompt: Optional[MaskedPrompt] = None) -> str:
    """Return the explicit password verbatim, or prompt for one with masked input."""
    if explicit is not None:
        logger.debug(f"Password provided explicitly (length: {len(explicit)} characters)")
        return explicit
    password = (prompt or MaskedPrompt()).read()
    logger.debug(f"Password provided via prompt (length: {len(password)} characters)")
    return password


def read_password_from_file(file_path) -> str:
    """Read a password from a file, stripping whitespace."""
    file_path = Path(file_path).expanduser()
    try:
        with file_path.open('r', encoding='utf-8') as f:
            password = f.read().strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Failed to read password from {file_path}: {e}")
        raise InputError(f"Error reading password file {file_path}: {e}") from e
    logger.debug(f"Read password from file: {file_path} (length: {len(password)} characters)")
    return password


# ---------------------------------------------------------------------------
# Cipher pipeline
# ---------------------------------------------------------------------------

class _BlockTransform:
    """AES-CBC context paired with PKCS7 padding in the right order for a direction."""
    def __init__(self, direction: Direction, material: PasswordMaterial, config: StageCryptConfig):
        cipher = Cipher(algorithms.AES(material.key), modes.CBC(material.iv))
        scheme = padding.PKCS7(config.BLOCK_SIZE)
        self.direction = direction
        if direction is Direction.ENCRYPT:
            self._context = cipher.encryptor()
            self._padding = scheme.padder()
        else:
            self._context = cipher.decryptor()
            self._padding = scheme.unpadder()

    def update(self, chunk: bytes) -> bytes:
        if self.direction is Direction.ENCRYPT:
            return self._context.update(self._padding.update(chunk))
        return self._padding.update(self._context.update(chunk))

    def finalize(self) -> bytes:
        if self.direction is Direction.ENCRYPT:
            tail = self._context.update(self._padding.finalize())
            return tail + self._context.finalize()
        tail = self._padding.update(self._context.finalize())
        return tail + self._padding.finalize()


class SecretsCipher:
    """Streams a secrets file through AES-256-CBC in either direction."""
    def __init__(
        self,
        config: StageCryptConfig = DEFAULT_CONFIG,
        legacy_iv: bool = False,
        verbose: bool = False,
    ):
        self.config = config
        self.key_manager = StageKeyManager(config, legacy_iv)
        self.verbose = verbose

    def run(self, direction: Direction, paths: ResolvedPaths, password: str) -> str:
        """
        Derive key material and transform the source file into the destination.

        Args:
            direction: Direction.ENCRYPT or Direction.DECRYPT.
            paths: Resolved plaintext and encrypted paths.
            password: Raw password string.

        Returns:
            str: Human-readable confirmation naming source and destination files.

        Raises:
            SecretsNotFoundError: If the source file does not exist.
            StreamError: If reading, ciphering or writing fails.
        """
        self.require_source(direction, paths)
        src_path, dst_path, src_name, dst_name = paths.endpoints(direction)

        material = self.key_manager.derive(password)
        logger.info(f"Starting {direction.value} of {src_path} to {dst_path}")
        if self.verbose:
            print(f"{Fore.CYAN}{direction.value.capitalize()}ing {src_name}...{Style.RESET_ALL}")

        total = self._stream(direction, material, src_path, dst_path, src_name)

        message = f"Successfully {direction.past_tense} '{src_name}' to '{dst_name}'"
        logger.info(f"{message} ({total} bytes written)")
        return message

    @staticmethod
    def require_source(direction: Direction, paths: ResolvedPaths) -> None:
        """Raise SecretsNotFoundError unless the file to read from exists."""
        src_path, _, src_name, _ = paths.endpoints(direction)
        if not src_path.is_file():
            logger.error(f"Cannot {direction.value}: {src_path} does not exist")
            raise SecretsNotFoundError(f"Couldn't find the secrets file for this stage: {src_name}")

    def encrypt(self, paths: ResolvedPaths, password: str) -> str:
        return self.run(Direction.ENCRYPT, paths, password)

    def decrypt(self, paths: ResolvedPaths, password: str) -> str:
        return self.run(Direction.DECRYPT, paths, password)

    def _stream(
        self,
        direction: Direction,
        material: PasswordMaterial,
        src_path: Path,
        dst_path: Path,
        src_name: str,
    ) -> int:
        # The first failing step aborts the whole chain; nothing is written after it.
        step = 'open'
        written = 0
        try:
            transform = _BlockTransform(direction, material, self.config)
            with src_path.open('rb') as src, dst_path.open('wb') as dst:
                while True:
                    step = 'read'
                    chunk = src.read(self.config.CHUNK_SIZE)
                    if not chunk:
                        break
                    step = 'cipher'
                    out = transform.update(chunk)
                    step = 'write'
                    dst.write(out)
                    written += len(out)
                step = 'cipher'
                out = transform.finalize()
                step = 'write'
                dst.write(out)
                written += len(out)
                dst.flush()
                os.fsync(dst.fileno())
        except (OSError, ValueError) as e:
            logger.error(f"{direction.value.capitalize()} failed at {step} step for {src_path}: {e}")
            logger.warning(f"Destination {dst_path} may be partially written; regenerate it")
            raise StreamError(
                f"Failed to {direction.value} '{src_name}' ({step} step): {e}"
            ) from e
        if self.verbose:
            print(f"{Fore.CYAN}Wrote {written} bytes to {dst_path}{Style.RESET_ALL}")
        return written


# ---------------------------------------------------------------------------
# Plugin facade
# ---------------------------------------------------------------------------

def load_project_config(file_path) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Load plugin settings from a YAML project file.

    A serverless-style file contributes ``custom['serverless-secrets']`` and
    ``provider.stage``; any other mapping is taken as the plugin settings
    themselves.

    Returns:
        tuple: (plugin settings, default stage or None).

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping.
    """
    file_path = Path(file_path).expanduser()
    try:
        with file_path.open('r', encoding='utf-8') as f:
            document = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {file_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {file_path}: {e}") from e
    if not isinstance(document, dict):
        raise ConfigError(f"Config file {file_path} must contain a mapping")

    if 'custom' in document or 'provider' in document:
        custom = document.get('custom') or {}
        provider = document.get('provider') or {}
        if not isinstance(custom, dict):
            raise ConfigError(f"'custom' in {file_path} must be a mapping")
        if not isinstance(provider, dict):
            raise ConfigError(f"'provider' in {file_path} must be a mapping")
        settings = custom.get(PLUGIN_NAME) or {}
        stage = provider.get('stage')
    else:
        settings, stage = document, None
    if not isinstance(settings, dict):
        raise ConfigError(f"Settings for '{PLUGIN_NAME}' in {file_path} must be a mapping")
    validate_settings(settings, origin=str(file_path))

    if stage is not None and not isinstance(stage, str):
        raise ConfigError(f"'provider.stage' in {file_path} must be a string")
    if stage and '${' in stage:
        # Serverless variables are not expanded here; the stage must come from --stage.
        logger.warning(f"Ignoring unresolved provider.stage '{stage}' in {file_path}")
        stage = None
    logger.debug(f"Loaded config from {file_path}: keys={sorted(settings)}, stage={stage}")
    return settings, stage


_STRING_SETTINGS = ('secretsFilePathPrefix', 'source', 'entry')


def validate_settings(settings: Mapping[str, Any], origin: str = 'config') -> None:
    """Raise ConfigError unless every known plugin setting has the right type."""
    for key in _STRING_SETTINGS:
        value = settings.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"'{key}' in {origin} must be a string, got {type(value).__name__}")
    legacy_iv = settings.get('legacyIv', False)
    if not isinstance(legacy_iv, bool):
        raise ConfigError(f"'legacyIv' in {origin} must be true or false, got {legacy_iv!r}")


class SecretsPlugin:
    """Encrypt/decrypt commands for one project and stage."""
    def __init__(
        self,
        base_dir,
        stage: Optional[str] = None,
        password: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
        prompt: Optional[MaskedPrompt] = None,
        default_stage: Optional[str] = None,
        verbose: bool = False,
    ):
        settings = dict(config or {})
        validate_settings(settings)
        self.base_dir = Path(base_dir)
        self.stage = stage or default_stage or DEFAULT_CONFIG.DEFAULT_STAGE
        self.password = password
        self.prompt = prompt
        self.naming = NamingConfig.for_stage(
            self.stage,
            prefix=settings.get('secretsFilePathPrefix'),
            source=settings.get('source'),
            entry=settings.get('entry'),
        )
        self.cipher = SecretsCipher(legacy_iv=settings.get('legacyIv', False), verbose=verbose)

        options = {
            'stage': {'usage': 'Stage of the file to encrypt', 'shortcut': 's', 'required': True},
            'password': {'usage': 'Password to encrypt the file.', 'shortcut': 'p', 'required': False},
        }
        self.commands = {
            'encrypt': {'usage': 'Encrypt a secrets file for a specific stage.', 'options': options},
            'decrypt': {'usage': 'Decrypt a secrets file for a specific stage.', 'options': options},
            'check': {'usage': 'Check that the secrets file for a stage exists.', 'options': options},
        }
        self.hooks = {
            'encrypt:encrypt': self.encrypt,
            'decrypt:decrypt': self.decrypt,
            'package:cleanup': self.check_file_exists,
        }

    def _run(self, direction: Direction) -> str:
        paths = resolve_naming(self.naming, self.base_dir)
        # Fail before asking for a password that could not be used.
        self.cipher.require_source(direction, paths)
        password = acquire_password(self.password, self.prompt)
        return self.cipher.run(direction, paths, password)

    def encrypt(self) -> str:
        return self._run(Direction.ENCRYPT)

    def decrypt(self) -> str:
        return self._run(Direction.DECRYPT)

    def check_file_exists(self) -> str:
        """Verify the plaintext secrets file for the stage is in place."""
        paths = resolve_naming(self.naming, self.base_dir, create_dirs=False)
        if not paths.plaintext_path.is_file():
            logger.error(f"Secrets file missing for stage '{self.stage}': {paths.plaintext_path}")
            raise SecretsNotFoundError(f"Couldn't find the secrets file for this stage: {paths.source}")
        return f"Found secrets file for stage '{self.stage}': {paths.source}"


def encrypt(stage: str, base_dir, password: Optional[str] = None, config: Optional[Mapping[str, Any]] = None) -> str:
    """Encrypt the secrets file for ``stage`` under ``base_dir``."""
    return SecretsPlugin(base_dir, stage, password, config).encrypt()


def decrypt(stage: str, base_dir, password: Optional[str] = None, config: Optional[Mapping[str, Any]] = None) -> str:
    """Decrypt the encrypted artifact for ``stage`` under ``base_dir``."""
    return SecretsPlugin(base_dir, stage, password, config).decrypt()


def check_secrets_file(stage: str, base_dir, config: Optional[Mapping[str, Any]] = None) -> str:
    return SecretsPlugin(base_dir, stage, config=config).check_file_exists()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def setup_logging(log_file: Optional[str] = None, debug: bool = False,
                  config: StageCryptConfig = DEFAULT_CONFIG) -> List[logging.Handler]:
    """Attach a rotating file handler (and a console handler in debug mode)."""
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    handlers: List[logging.Handler] = [RotatingFileHandler(
        log_file or config.LOG_FILE,
        maxBytes=config.LOG_MAX_SIZE,
        backupCount=config.LOG_BACKUP_COUNT
    )]
    if debug:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    versions = {}
    for dist in ('cryptography', 'colorama', 'PyYAML'):
        try:
            versions[dist] = metadata.version(dist)
        except metadata.PackageNotFoundError:
            versions[dist] = 'unknown'
    logger.info(
        f"Starting {PROGRAM_NAME} v{PROGRAM_VERSION}, dependencies: "
        + ', '.join(f"{name}={version}" for name, version in versions.items())
    )
    return handlers


class StageCryptCLI:
    """Command-line front end for the secrets plugin."""
    def __init__(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None):
        self.stdin = stdin
        self.stdout = stdout

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='stagecrypt',
            description=(
                f"{PROGRAM_NAME}: encrypt and decrypt per-stage secrets files with a password.\n"
                f"Version {PROGRAM_VERSION}\n"
                "Uses AES-256-CBC with PBKDF2-HMAC-SHA512 derived key and IV.\n"
                "Password can be provided via --password, --password-file, or masked prompt."
            ),
            epilog=(
                "Examples:\n"
                "  Encrypt: stagecrypt encrypt --stage dev --password mypass\n"
                "  Decrypt: stagecrypt decrypt --stage prod --password-file ./pass.txt\n"
                "  Prompt:  stagecrypt decrypt --stage prod --config serverless.yml\n"
                "  Check:   stagecrypt check --stage prod"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument('--version', action='version', version=f"{PROGRAM_NAME} {PROGRAM_VERSION}")
        subparsers = parser.add_subparsers(dest='command', required=True)

        common = argparse.ArgumentParser(add_help=False)
        common.add_argument('-s', '--stage', type=str, help='Stage of the secrets file (default: provider stage or dev)')
        passwords = common.add_mutually_exclusive_group()
        passwords.add_argument('-p', '--password', type=str, help='Password for encryption/decryption')
        passwords.add_argument('--password-file', type=str, help='File containing the password (UTF-8)')
        common.add_argument('--base-dir', type=str, default='.', help='Project root (default: current directory)')
        common.add_argument('--config', type=str, help='YAML project file with plugin settings')
        common.add_argument('--prefix', type=str, help='Secrets directory relative to the project root')
        common.add_argument('--source', type=str, help='Plaintext file name override')
        common.add_argument('--entry', type=str, help='Encrypted file name override')
        common.add_argument('--legacy-iv', action='store_true', help='Derive the IV from the key (older artifacts)')
        common.add_argument('--log-file', type=str, help='Log file path (default: stagecrypt.log)')
        common.add_argument('--debug', action='store_true', help='Enable debug logging to the console')
        common.add_argument('--verbose', action='store_true', help='Enable verbose console output')

        subparsers.add_parser('encrypt', parents=[common], help='Encrypt a secrets file for a specific stage')
        subparsers.add_parser('decrypt', parents=[common], help='Decrypt a secrets file for a specific stage')
        subparsers.add_parser('check', parents=[common], help='Check that the secrets file for a stage exists')
        return parser

    def _build_plugin(self, args: argparse.Namespace) -> SecretsPlugin:
        settings: Dict[str, Any] = {}
        default_stage = None
        if args.config:
            settings, default_stage = load_project_config(args.config)
        overrides = {
            'secretsFilePathPrefix': args.prefix,
            'source': args.source,
            'entry': args.entry,
        }
        settings.update({key: value for key, value in overrides.items() if value is not None})
        if args.legacy_iv:
            settings['legacyIv'] = True

        password = args.password
        if args.password_file:
            password = read_password_from_file(args.password_file)
        prompt = MaskedPrompt(stdin=self.stdin, stdout=self.stdout)
        return SecretsPlugin(
            args.base_dir,
            stage=args.stage,
            password=password,
            config=settings,
            prompt=prompt,
            default_stage=default_stage,
            verbose=args.verbose,
        )

    def run(self, argv=None) -> int:
        """Parse arguments, execute the command and return an exit code."""
        args = self.build_parser().parse_args(argv)
        handlers = setup_logging(args.log_file, args.debug)
        try:
            plugin = self._build_plugin(args)
            hook = {'encrypt': plugin.encrypt, 'decrypt': plugin.decrypt, 'check': plugin.check_file_exists}[args.command]
            message = hook()
        except StageCryptError as e:
            logger.error(f"{args.command} failed: {e}")
            print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}")
            return 1
        except KeyboardInterrupt:
            logger.warning(f"{args.command} interrupted by user")
            print(f"{Fore.YELLOW}Interrupted{Style.RESET_ALL}")
            return 130
        finally:
            for handler in handlers:
                logger.removeHandler(handler)
                handler.close()
        print(f"{Fore.GREEN}{message}{Style.RESET_ALL}")
        return 0


def main() -> None:
    init(autoreset=True)
    sys.exit(StageCryptCLI().run())


if __name__ == "__main__":
    main()
