"""Circle Cross-Chain Transfer Protocol (CCTP) V2 burn, attestation and mint."""
