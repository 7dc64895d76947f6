import logging
from web3 import Web3
from errors import ConfigError, RpcError
from utils import hex_to_int

logger = logging.getLogger(__name__)

PKP_MINTED_SIGNATURE = "PKPMinted(uint256,bytes)"
PKP_MINTED_TOPIC = Web3.to_hex(Web3.keccak(text=PKP_MINTED_SIGNATURE))

# PKPMinted event + getEthAddress view from the PKP NFT contract
PKP_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"indexed": False, "internalType": "bytes", "name": "pubkey", "type": "bytes"},
        ],
        "name": "PKPMinted",
        "type": "event",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "getEthAddress",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class ChainReader:
    """JSON-RPC access to one PKP contract on one blockchain."""

    def __init__(self, registry, blockchain, network, timeout=30, w3=None):
        self.chain = registry.chain(blockchain)
        self.network = registry.network(network)
        self.w3 = w3 or Web3(Web3.HTTPProvider(self.chain.rpc_url, request_kwargs={"timeout": timeout}))
        self.address = Web3.to_checksum_address(self.network.address)
        self.contract = self.w3.eth.contract(address=self.address, abi=PKP_ABI)

    @property
    def label(self):
        return f"{self.chain.name} blockchain, {self.network.name} network"

    def verify_chain(self):
        try:
            chain_id = self.w3.eth.chain_id
        except Exception as e:
            raise RpcError(f"Could not reach {self.chain.rpc_url}: {e}") from e
        if chain_id != self.chain.chain_id:
            raise ConfigError(
                f"{self.chain.rpc_url} reports chain id {chain_id}, expected {self.chain.chain_id} for {self.chain.name}"
            )
        return chain_id

    def head_block(self):
        try:
            return self.w3.eth.block_number
        except Exception as e:
            raise RpcError(f"Failed to get chain head on {self.label}: {e}") from e

    def query_logs(self, from_block, to_block):
        """PKPMinted logs emitted by the contract in [from_block, to_block]."""
        params = {
            "address": self.address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [PKP_MINTED_TOPIC],
        }
        try:
            return self.w3.eth.get_logs(params)
        except Exception as e:
            raise RpcError(f"Error fetching events from block {from_block} to {to_block} on {self.label}: {e}") from e

    @staticmethod
    def decode_token_id(log):
        # tokenId is indexed, so it lives in topics[1]
        topics = log["topics"]
        if len(topics) < 2:
            raise RpcError(f"PKPMinted log without tokenId topic: {log}")
        try:
            return str(hex_to_int(topics[1]))
        except (TypeError, ValueError) as e:
            raise RpcError(f"Malformed tokenId topic {topics[1]!r}: {e}") from e

    def get_eth_address(self, token_id):
        try:
            return self.contract.functions.getEthAddress(int(token_id)).call()
        except Exception as e:
            raise RpcError(f"Error fetching ETH address for Token ID {token_id} on {self.label}: {e}") from e
