# user_store.py
import base64
import logging
from typing import Dict, Optional

import asyncpg
from solders.keypair import Keypair

logger = logging.getLogger(__name__)


class UserStore:
    """
    User wallets with in-memory fallback.

    Each authenticated user owns one custodial devnet keypair, created on
    request and used to sign that user's write transactions.
    """
    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.pool = None
        self.wallets: Dict[str, dict] = {}

    async def init_db(self):
        try:
            if self.database_url:
                self.pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=1,
                    max_size=10
                )

                async with self.pool.acquire() as conn:
                    await conn.execute('''
                        CREATE TABLE IF NOT EXISTS user_wallets (
                            user_id TEXT PRIMARY KEY,
                            email TEXT,
                            wallet_address TEXT NOT NULL,
                            private_key TEXT NOT NULL,
                            created_at TIMESTAMP DEFAULT NOW(),
                            updated_at TIMESTAMP DEFAULT NOW()
                        )
                    ''')
                    await conn.execute('ALTER TABLE user_wallets ADD COLUMN IF NOT EXISTS email TEXT')
                logger.info("User store database initialized successfully")
            else:
                logger.info("No DATABASE_URL found, using in-memory user store")
                self.pool = None
        except Exception as e:
            logger.error(f"User store initialization failed, using in-memory storage: {e}")
            self.pool = None

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def store_user_wallet(self, user_id: str, wallet_address: str, private_key_b64: str,
                                email: Optional[str] = None):
        if self.pool:
            try:
                async with self.pool.acquire() as conn:
                    await conn.execute('''
                        INSERT INTO user_wallets (user_id, email, wallet_address, private_key)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (user_id)
                        DO UPDATE SET
                            email = $2,
                            wallet_address = $3,
                            private_key = $4,
                            updated_at = NOW()
                    ''', user_id, email, wallet_address, private_key_b64)
                return
            except Exception as e:
                logger.error(f"Database storage failed, using in-memory: {e}")
        self.wallets[user_id] = {
            'email': email,
            'wallet_address': wallet_address,
            'private_key': private_key_b64,
        }

    async def create_wallet(self, user_id: str, email: Optional[str] = None) -> dict:
        """Generates and stores a fresh keypair. Refuses when the user already has one."""
        existing = await self.get_user_wallet(user_id)
        if existing:
            return {
                "success": False,
                "wallet_address": existing['wallet_address'],
                "message": "User already has a wallet",
                "error": "Wallet already exists",
            }

        kp = Keypair()
        wallet_address = str(kp.pubkey())
        await self.store_user_wallet(user_id, wallet_address, encode_keypair(kp), email=email)
        logger.info(f"Created wallet {wallet_address} for user {email or user_id}")
        return {
            "success": True,
            "wallet_address": wallet_address,
            "message": "Wallet created successfully",
        }

    async def get_user_wallet(self, user_id: str) -> Optional[dict]:
        if self.pool:
            try:
                async with self.pool.acquire() as conn:
                    row = await conn.fetchrow(
                        'SELECT user_id, email, wallet_address, private_key FROM user_wallets WHERE user_id = $1', user_id
                    )
                    if row:
                        return dict(row)
                    return None
            except Exception as e:
                logger.error(f"Database read failed, using in-memory: {e}")
        if user_id in self.wallets:
            return {'user_id': user_id, **self.wallets[user_id]}
        return None

    async def has_wallet(self, user_id: str) -> bool:
        return await self.get_user_wallet(user_id) is not None

    async def get_user_keypair(self, user_id: str) -> Optional[Keypair]:
        wallet = await self.get_user_wallet(user_id)
        if not wallet:
            return None
        try:
            return Keypair.from_bytes(base64.b64decode(wallet['private_key']))
        except Exception as e:
            logger.error(f"Stored key for user {user_id} is unreadable: {e}")
            return None


def encode_keypair(kp: Keypair) -> str:
    """Base64 form the user database stores secret keys in"""
    return base64.b64encode(bytes(kp)).decode()
