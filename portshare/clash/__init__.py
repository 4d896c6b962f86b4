"""Configuration discovery, controller clients and node switching for a local Clash/Mihomo proxy."""